"""Conversation state machine.

One inbound message is one turn: the user's stored stage is loaded, the
structured intent is routed to its handler, the handler decides the reply and
the next stage, and the new stage is written back on the User row.

Errors never leave a turn. Date and validation errors become corrective
replies; a failed write restores the stage the user had before the turn so
the same message can simply be sent again.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, List, NamedTuple, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

import crud
import preferences
from database import Reminder, StatusEnum, User
from date_parser import (
    DAY_NAMES, TimeExpression, current_time, format_for_display, format_time,
    is_bare_weekday, resolve, to_user_timezone, weekday_index,
)
from errors import ConflictDetected, DateParseError, PersistenceFailure, ValidationError
from intents import IntentDispatcher, classify_speech
from logger_config import setup_logger
from nlp_service import NLPService
from recurrence import describe, parse_end_date, parse_pattern, pattern_for_kind
from schemas import (
    ConflictResolutionState, DateClarificationState, DeleteReminderSelectionState,
    FollowupContentState, FollowupDatetimeState, InitialState, RecurrencePattern,
    RescheduleConfirmationState, UpdateReminderSelectionState, VoiceResponseReply,
    dump_state, load_state,
)
from validation import ensure_no_conflict, validate_content, validate_date

logger = setup_logger(__name__, 'conversation.log')

INTRODUCTION = (
    "I'm your reminder assistant. Would you like to set a reminder? "
    "Just tell me what you need to be reminded about and when."
)
FALLBACK_REPLY = "I'm not sure how to help with that. Would you like to set a reminder?"
RETRY_REPLY = "I had trouble saving that. Please try again."
ASK_NEW_TIME = "No problem. Please specify a different date and time for your reminder."

_RECURRENCE_KINDS = {"none", "daily", "weekly", "monthly", "custom"}
_ACTIVE_STATUSES = (StatusEnum.PENDING, StatusEnum.SENT)


class Recurrence(NamedTuple):
    kind: str = "none"
    pattern: Optional[RecurrencePattern] = None
    end_date: Optional[date] = None

    @classmethod
    def from_state(cls, state) -> "Recurrence":
        return cls(
            getattr(state, "recurrence", "none"),
            getattr(state, "recurrence_pattern", None),
            getattr(state, "end_date", None),
        )

    def fields(self) -> dict:
        return {"recurrence": self.kind, "recurrence_pattern": self.pattern, "end_date": self.end_date}


ONE_TIME = Recurrence()


@dataclass
class Turn:
    """Everything a handler needs for one message; ``next_state`` None keeps the stage."""

    user: User
    state: Any
    now: datetime
    message_text: Optional[str] = None
    next_state: Any = None

    def transition(self, state) -> None:
        self.next_state = state


# ---------------------------------------------------------------------------
# Fuzzy content matching
# ---------------------------------------------------------------------------

def _stem(token: str) -> str:
    if token.endswith("ing") and len(token) > 4:
        return token[:-3]
    if token.endswith("s") and len(token) > 3:
        return token[:-1]
    return token


def _tokens_match(a: str, b: str) -> bool:
    return a == b or _stem(a) == b or a == _stem(b) or _stem(a) == _stem(b)


def content_matches(query: str, content: str, threshold: float = 0.6) -> bool:
    """True when one text contains the other or enough query words appear in the content."""
    q = " ".join(query.lower().split())
    c = " ".join(content.lower().split())
    if not q or not c:
        return False
    if q in c or c in q:
        return True

    query_tokens = re.findall(r"\w+", q)
    content_tokens = re.findall(r"\w+", c)
    if not query_tokens:
        return False
    matched = sum(1 for qt in query_tokens if any(_tokens_match(qt, ct) for ct in content_tokens))
    return matched / len(query_tokens) >= threshold


def find_matching(reminders: List[Reminder], query: Optional[str]) -> List[Reminder]:
    if not query:
        return []
    return [r for r in reminders if content_matches(query, r.content)]


# ---------------------------------------------------------------------------
# Recurrence from an intent
# ---------------------------------------------------------------------------

def _parse_end(value: Optional[str], now: datetime) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return parse_end_date(f"until {value}", now)


def recurrence_from_intent(kind: Optional[str], pattern: Optional[RecurrencePattern],
                           end_date: Optional[str], message_text: Optional[str],
                           now: datetime) -> Recurrence:
    """Turn the recurrence fields of an intent into a rule.

    Simple kinds map to interval-1 rules; a custom kind without an explicit
    rule, or a kind that is free text ("every other friday"), is read from
    the text. The end date falls back to the message's "until" clause.
    """
    kind = (kind or "none").strip().lower()
    from_text = parse_pattern(message_text, now) if message_text else None

    if kind not in _RECURRENCE_KINDS:
        parsed = parse_pattern(kind, now) or from_text
        if parsed is None:
            logger.warning(f"Ignoring unrecognised recurrence {kind!r}")
            return ONE_TIME
        return Recurrence(parsed.recurrence, parsed.pattern, _parse_end(end_date, now) or parsed.end_date)

    if kind == "none":
        return ONE_TIME

    rule = pattern or pattern_for_kind(kind) or (from_text.pattern if from_text else None)
    if rule is None:
        logger.warning(f"Recurrence {kind!r} has no rule, creating a one-time reminder")
        return ONE_TIME

    end = _parse_end(end_date, now)
    if end is None and message_text:
        end = parse_end_date(message_text.lower(), now)
    return Recurrence(kind, rule, end)


def _align_start(instant: datetime, pattern: Optional[RecurrencePattern]) -> datetime:
    """Move a start without an explicit date onto the first day the rule allows."""
    if pattern is None:
        return instant
    days = list(pattern.days_of_week) or ([pattern.day_of_week] if pattern.day_of_week is not None else [])
    if not days:
        return instant
    for _ in range(7):
        if weekday_index(instant) in days:
            break
        instant = instant + timedelta(days=1)
    return instant


def _expression_from(intent) -> TimeExpression:
    try:
        return TimeExpression(
            date=intent.date,
            time=intent.time,
            time_reference=intent.time_reference,
            relative_time=intent.relative_time,
        )
    except PydanticValidationError as e:
        logger.warning(f"Unusable time fields in intent {intent.type}: {e.error_count()} error(s)")
        raise DateParseError(
            "I couldn't understand when you want to be reminded. Please try something "
            "like 'tomorrow at 9am' or 'in 30 minutes'."
        ) from e


# ---------------------------------------------------------------------------
# Conversation service
# ---------------------------------------------------------------------------

class ConversationService:
    """Runs conversation turns for one database session.

    Args:
        db: Database session
        sender: Message sink with ``async send(to, body) -> bool``
        nlp: Intent extractor (defaults to the LLM client)
    """

    def __init__(self, db: Session, sender, nlp: Optional[NLPService] = None):
        self.db = db
        self.sender = sender
        self.nlp = nlp or NLPService()

        self.dispatcher = IntentDispatcher(default=self._on_unrecognized)
        self.dispatcher.register("reminder", self._on_reminder)
        self.dispatcher.register("incomplete_reminder", self._on_incomplete_reminder)
        self.dispatcher.register("reminder_datetime", self._on_reminder_datetime)
        self.dispatcher.register("unclear_datetime", self._on_unclear_datetime)
        self.dispatcher.register("reminder_content", self._on_reminder_content)
        self.dispatcher.register("not_reminder", self._on_not_reminder)
        self.dispatcher.register("list_reminders", self._on_list_reminders)
        self.dispatcher.register("delete_reminder", self._on_delete_reminder)
        self.dispatcher.register("update_reminder", self._on_update_reminder)
        self.dispatcher.register("preference", self._on_preference)
        self.dispatcher.register("confirmation", self._on_confirmation)
        self.dispatcher.register("selection", self._on_selection)
        self.dispatcher.register("unclear_selection", self._on_unclear_selection)
        self.dispatcher.register("date_clarification", self._on_date_clarification)

    # -- entry points -------------------------------------------------------

    async def process_message(self, user: User, message_text: str, now: Optional[datetime] = None) -> str:
        """Extract the intent of an inbound message and run the turn."""
        state = load_state(user.conversation_state)
        today = current_time(user.timezone, now).date()
        intent = await self.nlp.extract_intent(message_text, state, today)
        logger.info(f"User {user.id} in stage {state.stage} sent intent {intent.type}")
        return await self.handle_intent(user, intent, message_text=message_text, now=now)

    async def handle_intent(self, user: User, intent, message_text: Optional[str] = None,
                            now: Optional[datetime] = None) -> str:
        """Route a structured intent, persist the next stage and send the reply.

        Returns:
            str: The reply sent to the user
        """
        previous_state = dict(user.conversation_state or {"stage": "initial"})
        turn = Turn(
            user=user,
            state=load_state(previous_state),
            now=now or datetime.now(timezone.utc),
            message_text=message_text,
        )

        handler = self.dispatcher.handler_for(intent.type)
        try:
            reply = handler(turn, intent)
        except (DateParseError, ValidationError) as e:
            logger.info(f"Turn for user {user.id} rejected: {e.message}")
            reply = e.message
        except PersistenceFailure as e:
            logger.error(f"Turn for user {user.id} failed during {e.operation}; keeping previous state")
            turn.next_state = None
            reply = RETRY_REPLY
        except Exception as e:
            logger.error(f"Unexpected error in turn for user {user.id}: {str(e)}", exc_info=True)
            turn.next_state = None
            reply = RETRY_REPLY

        if turn.next_state is not None:
            user.conversation_state = dump_state(turn.next_state)
        else:
            user.conversation_state = previous_state
        user.last_interaction = crud.as_utc(turn.now)
        try:
            crud.save_user(self.db, user)
        except PersistenceFailure:
            logger.error(f"Could not save conversation state for user {user.id}")
            reply = RETRY_REPLY

        await self._reply(user, reply)
        return reply

    async def _reply(self, user: User, text: str) -> None:
        try:
            delivered = await self.sender.send(user.phone_number, text)
        except Exception as e:
            logger.error(f"Error sending reply to {user.phone_number}: {str(e)}")
            return
        if delivered is False:
            logger.warning(f"Reply to {user.phone_number} was not delivered")

    # -- helpers ------------------------------------------------------------

    def _resolve(self, turn: Turn, expression: TimeExpression) -> datetime:
        return resolve(
            expression,
            turn.user.timezone,
            preferences.get_time_preferences(turn.user),
            turn.now,
        )

    def _display(self, turn: Turn, instant: datetime) -> str:
        return format_for_display(instant, turn.user.timezone)

    def _candidates(self, turn: Turn, identifier_type: str, identifier: Optional[str]) -> List[Reminder]:
        if not identifier:
            return []
        if identifier_type == "id":
            reminder = crud.get_reminder(self.db, identifier, turn.user.id)
            return [reminder] if reminder and reminder.status in _ACTIVE_STATUSES else []
        active = [r for r in crud.get_reminders_by_user(self.db, turn.user.id) if r.status in _ACTIVE_STATUSES]
        return find_matching(active, identifier)

    def _numbered(self, turn: Turn, reminders: List[Reminder]) -> str:
        return "\n".join(
            f'{i}. "{r.content}" - {self._display(turn, r.scheduled_for)}'
            for i, r in enumerate(reminders, start=1)
        )

    # -- creation pipeline --------------------------------------------------

    def _schedule(self, turn: Turn, content: Optional[str], expression: TimeExpression,
                  recurrence: Recurrence = ONE_TIME) -> str:
        """Validate content, resolve the time, then hand over to ``_schedule_at``."""
        content_check = validate_content(content)
        if not content_check.valid:
            turn.transition(FollowupContentState(
                date=expression.date,
                time=expression.time,
                time_reference=expression.time_reference,
                **recurrence.fields(),
            ))
            if content_check.suggestion:
                return f"{content_check.message} {content_check.suggestion.message}"
            return content_check.message

        content = content.strip()

        weekday = is_bare_weekday(expression.date)
        local_now = current_time(turn.user.timezone, turn.now)
        if weekday is not None and expression.relative_time is None and weekday == weekday_index(local_now):
            try:
                today_option = self._resolve(turn, expression.model_copy(update={"date": "today"}))
                next_week_option = self._resolve(
                    turn, expression.model_copy(update={"date": f"next {DAY_NAMES[weekday].lower()}"})
                )
            except DateParseError as e:
                turn.transition(FollowupDatetimeState(content=content, **recurrence.fields()))
                return e.message
            if to_user_timezone(today_option, turn.user.timezone).date() != local_now.date():
                # the time has passed today, so only next week is left
                return self._schedule_at(turn, content, next_week_option, recurrence)
            turn.transition(DateClarificationState(
                content=content,
                today_option=today_option,
                next_week_option=next_week_option,
                time=expression.time,
                time_reference=expression.time_reference,
                **recurrence.fields(),
            ))
            return (
                f"Did you mean today ({self._display(turn, today_option)}) or "
                f"next {DAY_NAMES[weekday]} ({self._display(turn, next_week_option)})?"
            )

        try:
            instant = self._resolve(turn, expression)
        except DateParseError as e:
            logger.info(f"Could not resolve time for user {turn.user.id}: {e.message}")
            turn.transition(FollowupDatetimeState(content=content, **recurrence.fields()))
            return e.message

        if recurrence.kind != "none" and not expression.date and not expression.relative_time:
            instant = _align_start(instant, recurrence.pattern)

        return self._schedule_at(turn, content, instant, recurrence)

    def _schedule_at(self, turn: Turn, content: str, instant: datetime, recurrence: Recurrence) -> str:
        """Date validation, then the conflict check, then creation."""
        date_check = validate_date(instant, turn.now)
        note = ""
        if not date_check.valid:
            if date_check.suggestion:
                turn.transition(RescheduleConfirmationState(
                    content=content,
                    suggested_date=date_check.suggestion.date,
                    **recurrence.fields(),
                ))
                return f"{date_check.message} {date_check.suggestion.message}"
            turn.transition(FollowupDatetimeState(content=content, **recurrence.fields()))
            return date_check.message
        if date_check.adjusted:
            instant = date_check.date
            note = f"{date_check.message}\n"

        try:
            ensure_no_conflict(self.db, turn.user.id, instant, timezone_name=turn.user.timezone)
        except ConflictDetected as e:
            turn.transition(ConflictResolutionState(
                content=content,
                scheduled_for=instant,
                conflict_ids=[c.id for c in e.conflicts],
                **recurrence.fields(),
            ))
            return e.message

        return note + self._create(turn, content, instant, recurrence)

    def _create(self, turn: Turn, content: str, instant: datetime, recurrence: Recurrence) -> str:
        reminder = crud.create_reminder(self.db, {
            'user_id': turn.user.id,
            'content': content,
            'scheduled_for': instant,
            'recurrence': recurrence.kind,
            'recurrence_pattern': recurrence.pattern.model_dump(exclude_none=True) if recurrence.pattern else None,
            'end_date': recurrence.end_date,
            'notification_method': turn.user.preferred_notification_method,
        })
        turn.transition(InitialState())

        local = to_user_timezone(reminder.scheduled_for, turn.user.timezone)
        if recurrence.kind != "none" and recurrence.pattern:
            description = describe(recurrence.pattern, local, recurrence.end_date)
            return f'✅ Recurring reminder set: "{content}" {description} at {format_time(local)}.'
        return f'✅ Reminder set for {format_for_display(local)}: "{content}"'

    # -- intent handlers ----------------------------------------------------

    def _on_reminder(self, turn: Turn, intent) -> str:
        recurrence = recurrence_from_intent(
            intent.recurrence, intent.recurrence_pattern, intent.end_date, turn.message_text, turn.now,
        )
        expression = _expression_from(intent)
        if not (expression.date or expression.time or expression.time_reference or expression.relative_time):
            if intent.content:
                turn.transition(FollowupDatetimeState(content=intent.content, **recurrence.fields()))
                return f'When would you like to be reminded about "{intent.content}"?'
        return self._schedule(turn, intent.content, expression, recurrence)

    def _on_incomplete_reminder(self, turn: Turn, intent) -> str:
        recurrence = recurrence_from_intent(intent.recurrence, None, None, turn.message_text, turn.now)
        missing = set(intent.missing)

        if not intent.content or "content" in missing:
            turn.transition(FollowupContentState(
                date=intent.date,
                time=intent.time,
                time_reference=intent.time_reference,
                **recurrence.fields(),
            ))
            when = intent.date or intent.time or intent.time_reference
            if when and not (missing & {"date", "time"}):
                return f"What would you like to be reminded about {when}?"
            return "What would you like to be reminded about?"

        turn.transition(FollowupDatetimeState(content=intent.content, **recurrence.fields()))
        return f'When would you like to be reminded about "{intent.content}"?'

    def _on_reminder_datetime(self, turn: Turn, intent) -> str:
        if not isinstance(turn.state, FollowupDatetimeState):
            return self._on_unrecognized(turn, intent)

        expression = _expression_from(intent)
        if not (expression.relative_time or expression.time or expression.time_reference):
            missing = ["time"] if expression.date else ["date", "time"]
            return self._missing_datetime_message(missing)

        recurrence = Recurrence.from_state(turn.state)
        if not turn.state.content:
            turn.transition(FollowupContentState(
                date=expression.date,
                time=expression.time,
                time_reference=expression.time_reference,
                **recurrence.fields(),
            ))
            return "What would you like to be reminded about?"
        return self._schedule(turn, turn.state.content, expression, recurrence)

    @staticmethod
    def _missing_datetime_message(missing) -> str:
        missing = set(missing or [])
        if {"date", "time"} <= missing:
            return "Please provide both a date and time for your reminder."
        if "date" in missing:
            return "Please specify what date you want to be reminded."
        if "time" in missing:
            return "Please specify what time you want to be reminded."
        return "I need more information about when you want to be reminded."

    def _on_unclear_datetime(self, turn: Turn, intent) -> str:
        return self._missing_datetime_message(intent.missing)

    def _on_reminder_content(self, turn: Turn, intent) -> str:
        if not isinstance(turn.state, FollowupContentState):
            return self._on_unrecognized(turn, intent)
        if not intent.content:
            return "I need to know what you want to be reminded about. Please provide a brief description."

        state = turn.state
        recurrence = Recurrence.from_state(state)
        if not (state.date or state.time or state.time_reference):
            content_check = validate_content(intent.content)
            if not content_check.valid:
                return content_check.message
            turn.transition(FollowupDatetimeState(content=intent.content.strip(), **recurrence.fields()))
            return f'When would you like to be reminded about "{intent.content.strip()}"?'

        expression = TimeExpression(date=state.date, time=state.time, time_reference=state.time_reference)
        return self._schedule(turn, intent.content, expression, recurrence)

    def _on_confirmation(self, turn: Turn, intent) -> str:
        state = turn.state
        if isinstance(state, RescheduleConfirmationState):
            instant = state.suggested_date
        elif isinstance(state, ConflictResolutionState):
            instant = state.scheduled_for
        else:
            return self._on_unrecognized(turn, intent)

        recurrence = Recurrence.from_state(state)
        if not intent.confirmed:
            turn.transition(FollowupDatetimeState(content=state.content, **recurrence.fields()))
            return ASK_NEW_TIME
        return self._create(turn, state.content, instant, recurrence)

    def _on_date_clarification(self, turn: Turn, intent) -> str:
        state = turn.state
        if not isinstance(state, DateClarificationState):
            return self._on_unrecognized(turn, intent)

        choice = (intent.choice or "").lower().replace(" ", "_")
        if choice == "today":
            instant = state.today_option
        elif choice in ("next_week", "next"):
            instant = state.next_week_option
        else:
            return (
                f"Please reply \"today\" for {self._display(turn, state.today_option)} "
                f"or \"next week\" for {self._display(turn, state.next_week_option)}."
            )
        return self._schedule_at(turn, state.content, instant, Recurrence.from_state(state))

    def _on_not_reminder(self, turn: Turn, intent) -> str:
        turn.transition(InitialState())
        return INTRODUCTION

    def _on_unrecognized(self, turn: Turn, intent) -> str:
        logger.info(f"Intent {intent.type} not handled in stage {turn.state.stage}, resetting")
        turn.transition(InitialState())
        return FALLBACK_REPLY

    def _on_preference(self, turn: Turn, intent) -> str:
        return preferences.handle_preference_command(
            self.db, turn.user, intent.action, intent.preference_type, intent.value,
        )

    # -- listing ------------------------------------------------------------

    def _on_list_reminders(self, turn: Turn, intent) -> str:
        label = (intent.filter or "all").strip()
        key = label.lower()
        local_now = current_time(turn.user.timezone, turn.now)

        if key == "today":
            end_of_day = local_now.replace(hour=23, minute=59, second=59, microsecond=0)
            reminders = crud.get_reminders_in_range(self.db, turn.user.id, local_now, end_of_day)
        elif key == "week":
            reminders = crud.get_reminders_in_range(self.db, turn.user.id, local_now, local_now + timedelta(days=7))
        else:
            reminders = crud.get_reminders_by_user(self.db, turn.user.id)
            if key != "all":
                reminders = find_matching(reminders, label)

        qualifier = "" if key == "all" else f"{label} "
        if not reminders:
            return f"You don't have any {qualifier}reminders."
        return (
            f"Here are your {qualifier}reminders:\n\n"
            f"{self._numbered(turn, reminders)}\n\n"
            "To cancel a reminder, say: 'Cancel my [reminder content]'"
        )

    # -- delete / update ----------------------------------------------------

    def _close_selection(self, turn: Turn) -> None:
        """A finished pick ends the selection stage; any other stage is kept."""
        if isinstance(turn.state, (DeleteReminderSelectionState, UpdateReminderSelectionState)):
            turn.transition(InitialState())

    def _cancel(self, turn: Turn, reminder: Reminder) -> str:
        crud.update_reminder_status(self.db, reminder.id, StatusEnum.CANCELLED)
        self._close_selection(turn)
        logger.info(f"User {turn.user.id} cancelled reminder {reminder.id}")
        return f'✅ Reminder "{reminder.content}" has been cancelled.'

    def _apply_update(self, turn: Turn, reminder: Reminder, updates) -> str:
        changes = {}

        if updates.content:
            content_check = validate_content(updates.content)
            if not content_check.valid:
                raise ValidationError(content_check.message, reason=content_check.reason)
            changes['content'] = updates.content.strip()

        if updates.date or updates.time or updates.time_reference:
            local = to_user_timezone(reminder.scheduled_for, turn.user.timezone)
            expression = TimeExpression(
                date=updates.date or local.strftime("%Y-%m-%d"),
                time=updates.time or (None if updates.time_reference else local.strftime("%H:%M")),
                time_reference=updates.time_reference,
            )
            instant = self._resolve(turn, expression)
            date_check = validate_date(instant, turn.now)
            if not date_check.valid:
                raise ValidationError(f"{date_check.message} Please choose a different time.", reason="date_in_past")
            changes['scheduled_for'] = date_check.date

        if not changes:
            return "What would you like to change about this reminder?"

        updated = crud.update_reminder(self.db, reminder.id, changes)
        self._close_selection(turn)
        return f'✅ Reminder updated: "{updated.content}" - {self._display(turn, updated.scheduled_for)}'

    def _on_delete_reminder(self, turn: Turn, intent) -> str:
        matches = self._candidates(turn, intent.identifier_type, intent.identifier)
        if not matches:
            if intent.identifier_type == "id" or not intent.identifier:
                return "I couldn't find that reminder."
            return f'I couldn\'t find a reminder about "{intent.identifier}".'
        if len(matches) > 1:
            turn.transition(DeleteReminderSelectionState(candidate_ids=[r.id for r in matches]))
            return (
                "I found multiple matching reminders. Please specify which one to cancel:\n\n"
                f"{self._numbered(turn, matches)}"
            )
        return self._cancel(turn, matches[0])

    def _on_update_reminder(self, turn: Turn, intent) -> str:
        matches = self._candidates(turn, intent.identifier_type, intent.identifier)
        if not matches:
            if intent.identifier_type == "id" or not intent.identifier:
                return "I couldn't find that reminder."
            return f'I couldn\'t find a reminder about "{intent.identifier}".'
        if len(matches) > 1:
            turn.transition(UpdateReminderSelectionState(
                candidate_ids=[r.id for r in matches],
                updates=intent.updates,
            ))
            return (
                "I found multiple matching reminders. Please specify which one to update:\n\n"
                f"{self._numbered(turn, matches)}"
            )
        return self._apply_update(turn, matches[0], intent.updates)

    def _selection_candidates(self, turn: Turn) -> List[Reminder]:
        reminders = crud.get_reminders_by_ids(self.db, turn.state.candidate_ids)
        return [r for r in reminders if r.user_id == turn.user.id and r.status in _ACTIVE_STATUSES]

    def _reprompt_selection(self, turn: Turn, candidates: List[Reminder], lead: Optional[str] = None) -> str:
        verb = "cancel" if isinstance(turn.state, DeleteReminderSelectionState) else "update"
        lead = lead or "I couldn't tell which reminder you meant."
        return f"{lead} Please reply with the number of the reminder to {verb}:\n\n{self._numbered(turn, candidates)}"

    def _on_selection(self, turn: Turn, intent) -> str:
        if not isinstance(turn.state, (DeleteReminderSelectionState, UpdateReminderSelectionState)):
            return self._on_unrecognized(turn, intent)

        candidates = self._selection_candidates(turn)
        if not candidates:
            turn.transition(InitialState())
            return "Those reminders are no longer active."

        chosen = None
        if intent.index is not None and 0 <= intent.index < len(candidates):
            chosen = candidates[intent.index]
        elif intent.content:
            matches = find_matching(candidates, intent.content)
            if len(matches) == 1:
                chosen = matches[0]

        if chosen is None:
            return self._reprompt_selection(turn, candidates)
        if isinstance(turn.state, DeleteReminderSelectionState):
            return self._cancel(turn, chosen)
        return self._apply_update(turn, chosen, turn.state.updates)

    def _on_unclear_selection(self, turn: Turn, intent) -> str:
        if not isinstance(turn.state, (DeleteReminderSelectionState, UpdateReminderSelectionState)):
            return self._on_unrecognized(turn, intent)
        candidates = self._selection_candidates(turn)
        if not candidates:
            turn.transition(InitialState())
            return "Those reminders are no longer active."
        return self._reprompt_selection(turn, candidates, intent.message)

    # -- voice --------------------------------------------------------------

    async def handle_voice_response(self, reminder_id: str, speech: Optional[str],
                                    now: Optional[datetime] = None) -> VoiceResponseReply:
        """Apply a spoken answer to a reminder call.

        completed -> acknowledged, delay -> snoozed copy + acknowledged,
        cancel -> cancelled, unknown -> re-prompt without changes.
        """
        now = now or datetime.now(timezone.utc)
        try:
            reminder = crud.get_reminder(self.db, reminder_id)
        except PersistenceFailure:
            return VoiceResponseReply(intent="unknown", reply=RETRY_REPLY)
        if not reminder:
            logger.warning(f"Voice response for unknown reminder {reminder_id}")
            return VoiceResponseReply(intent="unknown", reply="I couldn't find that reminder.")

        voice = classify_speech(speech)
        logger.info(f"Voice response for reminder {reminder_id} classified as {voice.intent}")

        try:
            if voice.intent == "completed":
                crud.update_reminder_status(self.db, reminder.id, StatusEnum.ACKNOWLEDGED)
                reply = "Great! I've marked your reminder as completed."
                confirmation = f'✅ Marked "{reminder.content}" as done.'

            elif voice.intent == "delay":
                snoozed = crud.create_reminder(self.db, {
                    'user_id': reminder.user_id,
                    'content': reminder.content,
                    'scheduled_for': crud.as_utc(now) + timedelta(minutes=voice.minutes),
                    'notification_method': reminder.notification_method,
                    'series_origin_id': reminder.series_origin_id or reminder.id,
                    'previous_instance_id': reminder.id,
                })
                crud.update_reminder_status(self.db, reminder.id, StatusEnum.ACKNOWLEDGED)
                reply = f"No problem. I'll remind you again in {voice.minutes} minutes."
                confirmation = (
                    f'⏰ I\'ll remind you about "{reminder.content}" again at '
                    f"{format_time(to_user_timezone(snoozed.scheduled_for, reminder.user.timezone))}."
                )

            elif voice.intent == "cancel":
                crud.update_reminder_status(self.db, reminder.id, StatusEnum.CANCELLED)
                reply = "I've cancelled this reminder."
                confirmation = f'✅ Reminder "{reminder.content}" has been cancelled.'

            else:
                return VoiceResponseReply(
                    intent="unknown",
                    reply=(
                        "I didn't catch that. Say yes if you've done it, later to be reminded "
                        "again, or cancel to stop this reminder."
                    ),
                )
        except ValidationError as e:
            logger.info(f"Voice response for reminder {reminder_id} rejected: {e.message}")
            return VoiceResponseReply(intent=voice.intent, reply=e.message)
        except PersistenceFailure:
            return VoiceResponseReply(intent=voice.intent, reply=RETRY_REPLY)

        await self._reply(reminder.user, confirmation)
        return VoiceResponseReply(intent=voice.intent, reply=reply)
