"""Reminder validation: past dates, content rules and scheduling conflicts."""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import crud
from config import settings
from date_parser import format_time, ordinal, to_user_timezone
from errors import ConflictDetected, PersistenceFailure
from logger_config import setup_logger
from schemas import ConflictCheck, ContentValidation, DateValidation, Suggestion

logger = setup_logger(__name__, 'validation.log')

TIME_REFERENCE_WORDS = [
    "morning", "afternoon", "evening", "night",
    "tomorrow", "today", "next week", "next month",
]


def _now_like(instant: datetime, now: Optional[datetime]) -> datetime:
    """A "now" comparable with ``instant`` (same awareness and zone)."""
    if instant.tzinfo is None:
        if now is None:
            return datetime.now()
        return now.astimezone().replace(tzinfo=None) if now.tzinfo else now
    if now is None:
        return datetime.now(instant.tzinfo)
    return now.astimezone(instant.tzinfo) if now.tzinfo else now.replace(tzinfo=instant.tzinfo)


def validate_date(instant: datetime, now: Optional[datetime] = None) -> DateValidation:
    """Check that a resolved instant is not in the past.

    A few minutes late is accepted and moved to a minute from now; anything
    older comes back invalid with a reschedule suggestion.
    """
    now = _now_like(instant, now)

    if instant >= now:
        return DateValidation(valid=True, date=instant)

    minutes_late = int((now - instant).total_seconds() // 60)
    if minutes_late <= settings.DATE_GRACE_MINUTES:
        return DateValidation(
            valid=True,
            adjusted=True,
            date=now + timedelta(minutes=1),
            message="I've set this reminder for a minute from now.",
        )

    if instant.date() == now.date():
        tomorrow_same_time = instant + timedelta(days=1)
        return DateValidation(
            valid=False,
            message="This time has already passed for today.",
            suggestion=Suggestion(
                action="reschedule",
                date=tomorrow_same_time,
                message=(
                    f"Would you like to set this for {tomorrow_same_time.strftime('%A')} "
                    f"at the same time instead?"
                ),
            ),
        )

    suggested = now.replace(hour=instant.hour, minute=instant.minute, second=0, microsecond=0)
    if suggested < now:
        suggested = suggested + timedelta(days=1)
    return DateValidation(
        valid=False,
        message="The date you specified is in the past.",
        suggestion=Suggestion(
            action="reschedule",
            date=suggested,
            message=(
                f"Would you like to set this for {suggested.strftime('%A, %B')} "
                f"{ordinal(suggested.day)} at {format_time(suggested)} instead?"
            ),
        ),
    )


def validate_content(content: Optional[str]) -> ContentValidation:
    """Reject empty text, bare time words ("morning", "tomorrow evening") and overlong text."""
    if not content or not content.strip():
        return ContentValidation(valid=False, message="I need to know what to remind you about.")

    lowered = " ".join(content.lower().split())
    for ref in TIME_REFERENCE_WORDS:
        if lowered in (ref, f"tomorrow {ref}", f"today {ref}"):
            return ContentValidation(
                valid=False,
                message="What would you like to be reminded about?",
                reason="content_is_time_reference",
            )

    if len(content) > settings.MAX_CONTENT_LENGTH:
        return ContentValidation(
            valid=False,
            message=(
                f"That reminder text is too long. Please keep it under "
                f"{settings.MAX_CONTENT_LENGTH} characters."
            ),
            reason="content_too_long",
            suggestion=Suggestion(
                action="shorten",
                message="Please provide a shorter description for your reminder.",
            ),
        )

    return ContentValidation(valid=True)


def format_conflict_message(conflicts: List, timezone_name: Optional[str] = None) -> str:
    if len(conflicts) == 1:
        reminder = conflicts[0]
        when = format_time(to_user_timezone(reminder.scheduled_for, timezone_name))
        return (
            f'This conflicts with your reminder "{reminder.content}" at {when}. '
            f"Would you like to schedule it anyway?"
        )
    return (
        f"This conflicts with {len(conflicts)} other reminders you have around that time. "
        f"Would you like to schedule it anyway?"
    )


def check_conflicts(
    db: Session,
    user_id: str,
    instant: datetime,
    duration_minutes: Optional[int] = None,
    timezone_name: Optional[str] = None,
) -> ConflictCheck:
    """Find non-cancelled reminders inside [instant - buffer, instant + duration + buffer].

    A failed lookup is logged and reported as "no conflict" so creation is
    never blocked by it.
    """
    if duration_minutes is None:
        duration_minutes = settings.CONFLICT_DURATION_MINUTES
    buffer = timedelta(minutes=settings.CONFLICT_BUFFER_MINUTES)

    start_window = instant - buffer
    end_window = instant + timedelta(minutes=duration_minutes) + buffer

    try:
        conflicts = crud.get_reminders_in_range(db, user_id, start_window, end_window)
    except (SQLAlchemyError, PersistenceFailure) as e:
        logger.error(f"Error checking for conflicts for user {user_id}: {str(e)}")
        return ConflictCheck(has_conflict=False, error="Could not check for conflicts.")

    if conflicts:
        logger.info(f"Found {len(conflicts)} conflicting reminder(s) for user {user_id} near {instant}")
        return ConflictCheck(
            has_conflict=True,
            conflicts=conflicts,
            message=format_conflict_message(conflicts, timezone_name),
        )
    return ConflictCheck(has_conflict=False)


def ensure_no_conflict(
    db: Session,
    user_id: str,
    instant: datetime,
    timezone_name: Optional[str] = None,
) -> None:
    """Raise ConflictDetected when ``instant`` overlaps the user's other reminders.

    Raises:
        ConflictDetected: Carries the overlapping reminders and the question to ask
    """
    check = check_conflicts(db, user_id, instant, timezone_name=timezone_name)
    if check.has_conflict:
        raise ConflictDetected(check.conflicts, check.message)
