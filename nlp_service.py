"""LLM client that turns a chat message into a structured intent.

The prompt depends on the user's conversation stage. The reply is expected to
be a JSON object; anything else (HTTP failure, timeout, prose, broken JSON)
degrades to the keyword fallback so a conversation never stalls.
"""

from datetime import date
from typing import Optional

import httpx

from config import settings
from errors import UpstreamParseFailure
from intents import UnrecognizedIntent, extract_json, fallback_intent, parse_intent
from logger_config import setup_logger
from schemas import InitialState

logger = setup_logger(__name__, 'nlp.log')

JSON_ONLY = (
    "IMPORTANT: You must only respond with valid JSON in the exact format specified. "
    "Do not include any explanatory text, markdown formatting, or code blocks. "
    "Just output the JSON object directly."
)

_DATE_FORMATS = """For dates, extract in one of these formats:
- YYYY-MM-DD (e.g., 2025-03-23) for specific dates
- "today", "tomorrow" for relative dates
- "next Monday", "this Friday", "next week" for day references
- "in 3 days", "in 2 weeks" for duration-based dates
For "in 10 minutes" or "in 2 hours" use relativeTime: {"unit": "minutes|hours", "amount": N}.

For times, extract in one of these formats:
- HH:MM in 24-hour format (e.g., 09:00 or 14:30) for specific times
- Or include a timeReference like "morning", "afternoon", "evening", "night"
"""

_SELECTION = """You are a helpful reminder assistant. The user is selecting a reminder to {verb}.

If the response contains a number (e.g., "the first one", "number 2", "3"), respond with:
{{ "type": "selection", "index": [number-1] }}

If the response describes a reminder by content instead of number, respond with:
{{ "type": "selection", "content": "the content mentioned" }}

If you cannot determine which reminder they want to {verb}, respond with:
{{ "type": "unclear_selection", "message": "I couldn't determine which reminder you want to {verb}" }}"""


def build_system_prompt(state, today: Optional[date] = None) -> str:
    """System prompt for the user's current conversation stage."""
    today = today or date.today()
    stage = getattr(state, "stage", "initial")

    if stage == "followup_datetime":
        return f"""You are a helpful reminder assistant. The user has previously requested a reminder for: "{state.content}".
You need to extract the date and time for this reminder.

{_DATE_FORMATS}
Today's date is {today.isoformat()}.

Respond with JSON in this format:
{{ "type": "reminder_datetime", "date": "YYYY-MM-DD or relative date expression", "time": "HH:MM or null", "timeReference": "morning/afternoon/evening/night or null", "relativeTime": null }}

If you cannot determine the date or time, respond with:
{{ "type": "unclear_datetime", "missing": ["date", "time"] }}"""

    if stage == "followup_content":
        return f"""You are a helpful reminder assistant. The user has previously specified a reminder for date: {state.date} and time: {state.time or state.time_reference}.
You need to extract what the reminder is for.
Respond with JSON in this format: {{ "type": "reminder_content", "content": "what the reminder is for" }}"""

    if stage in ("reschedule_confirmation", "conflict_resolution"):
        return """You are a helpful reminder assistant. The user is responding to a question about a reminder.

If the response indicates agreement (yes, sure, okay, fine, that works, go ahead, etc.), respond with:
{ "type": "confirmation", "confirmed": true }

If the response indicates disagreement (no, don't, I'll choose another time, etc.), respond with:
{ "type": "confirmation", "confirmed": false }

For any other response, decide whether it is more likely an agreement or a disagreement."""

    if stage == "delete_reminder_selection":
        return _SELECTION.format(verb="delete")

    if stage == "update_reminder_selection":
        return _SELECTION.format(verb="update")

    if stage == "date_clarification":
        return """You are a helpful reminder assistant. The user was asked whether they meant today or the same day next week.

If they mean today, respond with: { "type": "date_clarification", "choice": "today" }
If they mean next week, respond with: { "type": "date_clarification", "choice": "next_week" }
If it is unclear, respond with: { "type": "date_clarification", "choice": null }"""

    return f"""You are a helpful reminder assistant. Extract reminder information from user messages.

{_DATE_FORMATS}
Today's date is {today.isoformat()}.

If the message is asking to create a reminder, respond with:
{{ "type": "reminder", "content": "what the reminder is for", "date": "YYYY-MM-DD or relative date expression", "time": "HH:MM or null if using timeReference", "timeReference": "morning/afternoon/evening/night (if applicable)", "relativeTime": null, "recurrence": "none|daily|weekly|monthly|custom", "recurrencePattern": null, "endDate": null }}
For repeating reminders such as "every Monday and Wednesday" use recurrence "custom" with recurrencePattern {{ "frequency": "day|week|month|year", "interval": 1, "daysOfWeek": [1, 3] }} (0 = Sunday) and endDate "YYYY-MM-DD" when an end is mentioned.

If reminder information is incomplete, respond with:
{{ "type": "incomplete_reminder", "content": "what you understood of the content or null", "date": "extracted date or null", "time": "extracted time or null", "timeReference": "extracted time reference or null", "missing": ["content", "date", "time"] }}

If the message is asking to see, list, or view reminders, respond with:
{{ "type": "list_reminders", "filter": "all|today|week|specific content" }}

If the message is asking to delete or cancel a reminder, respond with:
{{ "type": "delete_reminder", "identifierType": "content|id", "identifier": "the content or id" }}

If the message is asking to update or change a reminder, respond with:
{{ "type": "update_reminder", "identifierType": "content|id", "identifier": "the content or id", "updates": {{"date": "new date", "time": "new time", "content": "new content"}} }}

If the message is about setting or getting user preferences, respond with:
{{ "type": "preference", "action": "set|get", "preferenceType": "timezone|time_reference|notification_method", "value": "the preference value or reference object" }}
Examples:
- "What time is morning for me?" -> {{ "type": "preference", "action": "get", "preferenceType": "time_reference", "value": {{"reference": "morning"}} }}
- "Set morning to 7:30" -> {{ "type": "preference", "action": "set", "preferenceType": "time_reference", "value": {{"reference": "morning", "hour": 7, "minute": 30}} }}
- "What's my current timezone?" -> {{ "type": "preference", "action": "get", "preferenceType": "timezone", "value": null }}

If the message is not a reminder-related request, respond with:
{{ "type": "not_reminder", "content": "brief description of user's message" }}"""


class NLPService:
    """Calls an OpenRouter-compatible chat completion endpoint.

    Args:
        client: Optional AsyncClient; one is created per call when omitted
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def _complete(self, system_prompt: str, message_text: str) -> str:
        payload = {
            "model": settings.LLM_MODEL,
            "messages": [
                {"role": "system", "content": f"{system_prompt}\n\n{JSON_ONLY}"},
                {"role": "user", "content": message_text},
            ],
            "temperature": settings.LLM_TEMPERATURE,
            "response_format": {"type": "json_object"},
            "max_tokens": settings.LLM_MAX_TOKENS,
        }
        headers = {
            "Authorization": f"Bearer {settings.LLM_API_KEY}",
            "HTTP-Referer": settings.APP_URL,
            "X-Title": "Reminder Assistant",
            "Content-Type": "application/json",
        }

        if self._client is not None:
            response = await self._client.post(settings.LLM_API_URL, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT) as client:
                response = await client.post(settings.LLM_API_URL, json=payload, headers=headers)
        response.raise_for_status()

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamParseFailure(response.text, f"Unexpected completion shape: {e}") from e

    async def extract_intent(self, message_text: str, state=None, today: Optional[date] = None):
        """Structured intent for ``message_text`` given the conversation state.

        Never raises: upstream failures return ``fallback_intent(message_text)``.
        """
        state = state or InitialState()
        system_prompt = build_system_prompt(state, today)

        try:
            content = await self._complete(system_prompt, message_text)
            logger.info(f"Raw LLM response: {content}")
            intent = parse_intent(extract_json(content))
            if not isinstance(intent, UnrecognizedIntent):
                return intent
            logger.warning(f"Intent model reply has no usable shape (type {intent.raw_type!r}), using keywords")
        except httpx.TimeoutException:
            logger.error("Timeout while calling the intent model")
        except httpx.HTTPStatusError as e:
            logger.error(f"Intent model returned HTTP {e.response.status_code}: {e.response.text}")
        except httpx.RequestError as e:
            logger.error(f"Network error while calling the intent model: {str(e)}")
        except UpstreamParseFailure as e:
            logger.warning(f"Unparseable intent model reply ({e.message}): {e.raw!r}")

        return fallback_intent(message_text)
