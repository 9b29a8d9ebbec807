"""Reminder Assistant - Conversational WhatsApp reminders with voice follow-up.

Users create, list, update and cancel reminders in plain language over
WhatsApp; due reminders are delivered by message or phone call and can be
answered by voice.

Features:
- Natural-language dates and times in the user's timezone
- Recurring reminders (daily, weekly, specific weekdays, every N units, until a date)
- Multi-turn follow-ups for missing details, past dates and conflicts
- Per-user time references ("morning" = 7:30) and notification channel

Components:
- config: Application settings
- database: SQLAlchemy models and session management
- schemas: Pydantic schemas and conversation states
- crud: Database CRUD operations
- date_parser / recurrence / validation: scheduling rules
- intents / nlp_service: structured intents from the LLM
- conversation: the conversation state machine
- background_worker: notification dispatch loop
- api_server: FastAPI webhook surface

Usage:
    python main.py            # API server + worker
    python api_server.py
    python background_worker.py
"""

__version__ = "1.0.0"
__author__ = "Mayur"
__description__ = "Conversational WhatsApp reminder assistant"
