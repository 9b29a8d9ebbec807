"""Structured intents and the dispatchers that route them.

The LLM (or any other parser) returns a JSON object with a ``type``
discriminator. ``parse_intent`` is the single place where that payload is
cleaned and validated; everything downstream works with the typed models.
Voice replies never go through the LLM: ``classify_speech`` sorts a raw
transcript into completed / delay / cancel / unknown by keyword.
"""

import json
import re
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from typing_extensions import Annotated

from config import settings
from errors import UpstreamParseFailure
from logger_config import setup_logger
from schemas import CamelModel, RecurrencePattern, ReminderChanges, none_if_null

logger = setup_logger(__name__, 'nlp.log')


class _DateTimeFields(CamelModel):
    date: Optional[str] = None
    time: Optional[str] = None
    time_reference: Optional[str] = None
    relative_time: Optional[Dict[str, Any]] = None


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class ReminderIntent(_DateTimeFields):
    type: Literal["reminder"]
    content: Optional[str] = None
    recurrence: Optional[str] = None
    recurrence_pattern: Optional[RecurrencePattern] = None
    end_date: Optional[str] = None


class IncompleteReminderIntent(_DateTimeFields):
    type: Literal["incomplete_reminder"]
    content: Optional[str] = None
    recurrence: Optional[str] = None
    missing: List[str] = Field(default_factory=list)

    _missing_list = field_validator("missing", mode="before")(lambda cls, v: _as_list(v))


class ReminderDatetimeIntent(_DateTimeFields):
    type: Literal["reminder_datetime"]


class UnclearDatetimeIntent(CamelModel):
    type: Literal["unclear_datetime"]
    missing: List[str] = Field(default_factory=list)

    _missing_list = field_validator("missing", mode="before")(lambda cls, v: _as_list(v))


class ReminderContentIntent(CamelModel):
    type: Literal["reminder_content"]
    content: Optional[str] = None


class NotReminderIntent(CamelModel):
    type: Literal["not_reminder"]
    content: Optional[str] = None


class ListRemindersIntent(CamelModel):
    type: Literal["list_reminders"]
    filter: str = "all"


class DeleteReminderIntent(CamelModel):
    type: Literal["delete_reminder"]
    identifier_type: str = "content"
    identifier: Optional[str] = None


class UpdateReminderIntent(CamelModel):
    type: Literal["update_reminder"]
    identifier_type: str = "content"
    identifier: Optional[str] = None
    updates: ReminderChanges = Field(default_factory=ReminderChanges)


class PreferenceIntent(CamelModel):
    type: Literal["preference"]
    action: str = "get"
    preference_type: Optional[str] = None
    value: Any = None


class ConfirmationIntent(CamelModel):
    type: Literal["confirmation"]
    confirmed: bool = False


class SelectionIntent(CamelModel):
    type: Literal["selection"]
    index: Optional[int] = None
    content: Optional[str] = None


class UnclearSelectionIntent(CamelModel):
    type: Literal["unclear_selection"]
    message: Optional[str] = None


class DateClarificationIntent(CamelModel):
    type: Literal["date_clarification"]
    choice: Optional[str] = None


class UnrecognizedIntent(BaseModel):
    """A payload whose type is unknown or whose fields could not be validated."""

    type: Literal["unrecognized"] = "unrecognized"
    raw_type: Optional[str] = None


Intent = Annotated[
    Union[
        ReminderIntent,
        IncompleteReminderIntent,
        ReminderDatetimeIntent,
        UnclearDatetimeIntent,
        ReminderContentIntent,
        NotReminderIntent,
        ListRemindersIntent,
        DeleteReminderIntent,
        UpdateReminderIntent,
        PreferenceIntent,
        ConfirmationIntent,
        SelectionIntent,
        UnclearSelectionIntent,
        DateClarificationIntent,
    ],
    Field(discriminator="type"),
]

_intent_adapter = TypeAdapter(Intent)


def parse_intent(payload: Any):
    """Validate an upstream payload into a typed intent.

    "null"-like strings become real None values here and nowhere else.
    Anything that cannot be validated becomes an UnrecognizedIntent.
    """
    if not isinstance(payload, dict):
        logger.warning(f"Structured intent is not an object: {payload!r}")
        return UnrecognizedIntent()

    cleaned = none_if_null(payload)
    try:
        return _intent_adapter.validate_python(cleaned)
    except ValidationError as e:
        logger.warning(f"Unusable structured intent {cleaned!r}: {e.error_count()} error(s)")
        raw_type = cleaned.get("type")
        return UnrecognizedIntent(raw_type=str(raw_type) if raw_type is not None else None)


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_BRACED_JSON = re.compile(r"(\{[\s\S]*\})")


def extract_json(content: Optional[str]) -> Dict[str, Any]:
    """Pull the JSON object out of an LLM reply (bare, fenced, or embedded in prose).

    Raises:
        UpstreamParseFailure: No JSON object could be decoded
    """
    if not content:
        raise UpstreamParseFailure(content, "Empty response from intent model")

    candidate = content.strip()
    fenced = _FENCED_JSON.search(candidate)
    if fenced:
        candidate = fenced.group(1)
    elif not candidate.startswith("{"):
        braced = _BRACED_JSON.search(candidate)
        if braced:
            candidate = braced.group(1)

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise UpstreamParseFailure(content, f"Invalid JSON from intent model: {e}") from e
    if not isinstance(data, dict):
        raise UpstreamParseFailure(content, "Intent model returned JSON that is not an object")
    return data


def fallback_intent(message_text: Optional[str]):
    """Heuristic classification used when the upstream payload is unusable."""
    text = (message_text or "").lower()
    if any(word in text for word in ("remind", "tomorrow", "today")):
        return IncompleteReminderIntent(
            type="incomplete_reminder",
            content=message_text,
            missing=["date", "time"],
        )
    return NotReminderIntent(type="not_reminder", content="unrecognized message format")


class IntentDispatcher:
    """Maps an intent ``type`` to its handler; unknown types go to the default."""

    def __init__(self, default: Callable):
        self._handlers: Dict[str, Callable] = {}
        self._default = default

    def register(self, intent_type: str, handler: Callable) -> None:
        self._handlers[intent_type] = handler

    def handler_for(self, intent_type: str) -> Callable:
        return self._handlers.get(intent_type, self._default)

    def __contains__(self, intent_type: str) -> bool:
        return intent_type in self._handlers


# ---------------------------------------------------------------------------
# Voice replies
# ---------------------------------------------------------------------------

POSITIVE_PHRASES = [
    'yes', 'yeah', 'yep', 'sure', 'correct',
    'right', 'already did', 'done', 'completed',
    'i did', 'finished', 'taken care of',
]

DELAY_PHRASES = [
    'delay', 'later', 'remind me later', 'postpone',
    'reschedule', 'snooze', 'not now',
    'after', 'in a while', 'busy now',
]

CANCEL_PHRASES = [
    'cancel', 'remove', 'delete', "don't remind",
    'stop', 'forget it', 'nevermind',
]

_DELAY_MINUTES = re.compile(r"(\d+)\s*(?:minutes?|mins?)\b")
_DELAY_HOURS = re.compile(r"(\d+)\s*(?:hours?|hrs?)\b")


class VoiceIntent(BaseModel):
    intent: Literal["completed", "delay", "cancel", "unknown"]
    minutes: Optional[int] = None


def extract_delay_minutes(text: str) -> int:
    """Snooze length named in the transcript, else the configured default."""
    match = _DELAY_MINUTES.search(text)
    if match:
        return int(match.group(1))
    match = _DELAY_HOURS.search(text)
    if match:
        return int(match.group(1)) * 60
    if 'half hour' in text or 'half an hour' in text:
        return 30
    if 'quarter hour' in text:
        return 15
    if 'an hour' in text:
        return 60
    return settings.DEFAULT_DELAY_MINUTES


def classify_speech(speech: Optional[str]) -> VoiceIntent:
    """Completion phrases win over delay phrases, which win over cancel phrases."""
    if not speech or not speech.strip():
        return VoiceIntent(intent="unknown")

    text = speech.lower()
    if any(phrase in text for phrase in POSITIVE_PHRASES):
        return VoiceIntent(intent="completed")
    if any(phrase in text for phrase in DELAY_PHRASES):
        return VoiceIntent(intent="delay", minutes=extract_delay_minutes(text))
    if any(phrase in text for phrase in CANCEL_PHRASES):
        return VoiceIntent(intent="cancel")
    return VoiceIntent(intent="unknown")
