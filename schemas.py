"""Pydantic schemas for the Reminder Assistant.

Recurrence rules, conversation states, validation results and the HTTP
request/response shapes.
IMPORTANT: Pydantic automatically parses ISO datetime strings to datetime objects,
so conversation states survive the JSON column round trip with real datetimes.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from logger_config import setup_logger

logger = setup_logger(__name__, 'schemas.log')

RecurrenceKind = Literal["none", "daily", "weekly", "monthly", "custom"]
Frequency = Literal["day", "week", "month", "year"]

_NULL_WORDS = {"", "null", "none", "undefined", "n/a"}


def none_if_null(value: Any) -> Any:
    """Map the LLM's stand-ins for "absent" ("null", "", ...) to None.

    Dicts and lists are cleaned recursively; other values pass through.
    """
    if isinstance(value, str):
        return None if value.strip().lower() in _NULL_WORDS else value.strip()
    if isinstance(value, dict):
        return {k: none_if_null(v) for k, v in value.items()}
    if isinstance(value, list):
        return [v for v in (none_if_null(v) for v in value) if v is not None]
    return value


class CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase keys the LLM produces."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecurrencePattern(CamelModel):
    """Frequency + interval + optional day constraints.

    Weekdays are numbered 0 = Sunday ... 6 = Saturday.
    """

    frequency: Frequency
    interval: int = Field(1, ge=1)
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    days_of_week: List[int] = Field(default_factory=list)
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    month_of_year: Optional[int] = Field(None, ge=1, le=12)


class RecurrenceParse(BaseModel):
    """Result of reading a recurrence phrase."""

    recurrence: RecurrenceKind
    pattern: RecurrencePattern
    end_date: Optional[date] = None


class ReminderChanges(CamelModel):
    """Fields a user asked to change on an existing reminder."""

    content: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    time_reference: Optional[str] = None


# ---------------------------------------------------------------------------
# Conversation state (tagged by "stage")
# ---------------------------------------------------------------------------

class _RecurrenceCarrier(BaseModel):
    recurrence: RecurrenceKind = "none"
    recurrence_pattern: Optional[RecurrencePattern] = None
    end_date: Optional[date] = None


class InitialState(BaseModel):
    stage: Literal["initial"] = "initial"


class FollowupDatetimeState(_RecurrenceCarrier):
    stage: Literal["followup_datetime"] = "followup_datetime"
    content: Optional[str] = None


class FollowupContentState(_RecurrenceCarrier):
    stage: Literal["followup_content"] = "followup_content"
    date: Optional[str] = None
    time: Optional[str] = None
    time_reference: Optional[str] = None


class RescheduleConfirmationState(_RecurrenceCarrier):
    stage: Literal["reschedule_confirmation"] = "reschedule_confirmation"
    content: str
    suggested_date: datetime


class ConflictResolutionState(_RecurrenceCarrier):
    stage: Literal["conflict_resolution"] = "conflict_resolution"
    content: str
    scheduled_for: datetime
    conflict_ids: List[str] = Field(default_factory=list)


class DeleteReminderSelectionState(BaseModel):
    stage: Literal["delete_reminder_selection"] = "delete_reminder_selection"
    candidate_ids: List[str]


class UpdateReminderSelectionState(BaseModel):
    stage: Literal["update_reminder_selection"] = "update_reminder_selection"
    candidate_ids: List[str]
    updates: ReminderChanges = Field(default_factory=ReminderChanges)


class DateClarificationState(_RecurrenceCarrier):
    stage: Literal["date_clarification"] = "date_clarification"
    content: str
    today_option: datetime
    next_week_option: datetime
    time: Optional[str] = None
    time_reference: Optional[str] = None


ConversationState = Annotated[
    Union[
        InitialState,
        FollowupDatetimeState,
        FollowupContentState,
        RescheduleConfirmationState,
        ConflictResolutionState,
        DeleteReminderSelectionState,
        UpdateReminderSelectionState,
        DateClarificationState,
    ],
    Field(discriminator="stage"),
]

_state_adapter = TypeAdapter(ConversationState)


def load_state(raw: Optional[Dict[str, Any]]):
    """Deserialize a stored conversation state.

    A missing or corrupt state is treated as ``initial``.
    """
    if not raw:
        return InitialState()
    try:
        return _state_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Discarding unreadable conversation state {raw!r}: {e.error_count()} error(s)")
        return InitialState()


def dump_state(state) -> Dict[str, Any]:
    """Serialize a conversation state for the JSON column."""
    return state.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------

class Suggestion(BaseModel):
    action: Literal["reschedule", "shorten"]
    message: str
    date: Optional[datetime] = None


class DateValidation(BaseModel):
    valid: bool
    date: Optional[datetime] = None
    adjusted: bool = False
    message: Optional[str] = None
    suggestion: Optional[Suggestion] = None


class ContentValidation(BaseModel):
    valid: bool
    message: Optional[str] = None
    reason: Optional[str] = None
    suggestion: Optional[Suggestion] = None


class ConflictCheck(BaseModel):
    """Conflict lookup result; conflicts are ORM Reminder rows."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    has_conflict: bool
    conflicts: List[Any] = Field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

class InboundText(BaseModel):
    body: str = ""


class InboundMessage(BaseModel):
    """One message of a Whapi-style webhook delivery."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(..., alias="from", description="Sender phone number")
    type: str = "text"
    from_me: bool = False
    text: Optional[InboundText] = None


class WebhookPayload(BaseModel):
    messages: List[InboundMessage] = Field(default_factory=list)


class VoiceResponseRequest(BaseModel):
    reminder_id: str = Field(..., description="Reminder the call was about")
    speech_result: Optional[str] = Field(None, description="Speech-to-text transcript")


class VoiceResponseReply(BaseModel):
    intent: str
    reply: str


class ReminderResponse(BaseModel):
    """Schema for reminder responses.

    CRITICAL: datetime fields are datetime objects that get
    automatically serialized to ISO strings in JSON responses.
    """

    id: str = Field(..., description="Unique reminder ID")
    content: str = Field(..., description="What to remind about")
    scheduled_for: datetime = Field(..., description="When the reminder fires")
    recurrence: str = Field(..., description="Recurrence kind")
    recurrence_pattern: Optional[Dict] = Field(None, description="Recurrence rule")
    end_date: Optional[date] = Field(None, description="Last day of the recurrence")
    status: str = Field(..., description="Current status")
    notification_method: str = Field(..., description="Delivery channel")
    series_origin_id: Optional[str] = None
    created_at: datetime

    class Config:
        """Pydantic configuration"""
        from_attributes = True

    @classmethod
    def from_reminder(cls, reminder) -> "ReminderResponse":
        scheduled = reminder.scheduled_for
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=timezone.utc)
        return cls(
            id=reminder.id,
            content=reminder.content,
            scheduled_for=scheduled,
            recurrence=reminder.recurrence.value,
            recurrence_pattern=reminder.recurrence_pattern,
            end_date=reminder.end_date,
            status=reminder.status.value,
            notification_method=reminder.notification_method.value,
            series_origin_id=reminder.series_origin_id,
            created_at=reminder.created_at,
        )
