"""Configuration module for the Reminder Assistant.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for the Reminder Assistant.

    All settings can be overridden via environment variables.
    Example: export DATABASE_URL="postgresql://..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./reminders.db"
    """Database connection URL. Default: SQLite file in current directory"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """Webhook server host address"""

    API_PORT: int = 8005
    """Webhook server port"""

    # Timezone Configuration
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"
    """Timezone assigned to new users and used when a user has none"""

    AVAILABLE_TIMEZONES: List[str] = [
        "Asia/Kolkata",
        "America/New_York",
        "America/Los_Angeles",
        "Europe/London",
        "Europe/Paris",
        "Australia/Sydney",
        "Pacific/Auckland",
        "Asia/Tokyo",
        "Asia/Dubai",
    ]
    """Timezones a user may switch to through the preference command"""

    # LLM Configuration
    LLM_API_URL: str = "https://openrouter.ai/api/v1/chat/completions"
    """OpenRouter-compatible chat completion endpoint"""

    LLM_API_KEY: str = ""
    """Bearer token for the LLM endpoint"""

    LLM_MODEL: str = "meta-llama/llama-3-8b-instruct"
    """Model used for intent extraction"""

    LLM_TEMPERATURE: float = 0.3
    LLM_MAX_TOKENS: int = 500
    LLM_TIMEOUT: float = 30.0

    APP_URL: str = "http://localhost:8005"
    """Sent as HTTP-Referer to the LLM provider"""

    # WhatsApp Configuration
    WHATSAPP_API_URL: str = "https://gate.whapi.cloud"
    """Base URL of the WhatsApp gateway"""

    WHATSAPP_API_TOKEN: str = ""
    WHATSAPP_VERIFY_TOKEN: str = ""
    WHATSAPP_TIMEOUT: float = 15.0

    # Reminder Rules
    DATE_GRACE_MINUTES: int = 5
    """Past instants within this many minutes are snapped to a minute from now"""

    CONFLICT_BUFFER_MINUTES: int = 15
    """Buffer added on both sides of the conflict window"""

    CONFLICT_DURATION_MINUTES: int = 30
    """Assumed duration of a reminder when checking for conflicts"""

    MAX_CONTENT_LENGTH: int = 500
    """Maximum reminder text length"""

    DEFAULT_DELAY_MINUTES: int = 30
    """Snooze length when the caller asks for a delay without a duration"""

    # Background Worker Configuration
    WORKER_ENABLED: bool = True
    """Enable/disable the notification dispatch loop"""

    WORKER_CHECK_INTERVAL: int = 60
    """Interval in seconds for checking due reminders (default: 60 seconds)"""

    WORKER_SEND_RETRIES: int = 3
    """Delivery attempts per due reminder and iteration"""

    WORKER_RETRY_BACKOFF: float = 2.0
    """Base of the exponential wait between delivery attempts (seconds)"""

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    """Level for every service logger"""

    LOG_DIR: str = ""
    """Directory for rotating log files (empty: logs/ beside the code)"""

    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
