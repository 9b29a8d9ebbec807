"""Time expression resolver.

Turns the date / time / timeReference / relativeTime fields extracted from a
message into one concrete instant in the user's timezone.

Date phrases are matched against an ordered table of rules (pattern -> builder);
the first rule that matches wins. Time-of-day is applied afterwards and is
independent of the date rule that fired.
"""

import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, field_validator

from errors import DateParseError
from logger_config import setup_logger
from schemas import CamelModel, none_if_null

logger = setup_logger(__name__, 'date_parser.log')

DEFAULT_TIME_REFERENCES: Dict[str, Dict[str, int]] = {
    "morning": {"hour": 9, "minute": 0},
    "afternoon": {"hour": 14, "minute": 0},
    "evening": {"hour": 18, "minute": 0},
    "night": {"hour": 20, "minute": 0},
    "noon": {"hour": 12, "minute": 0},
    "midnight": {"hour": 0, "minute": 0},
    "lunch": {"hour": 12, "minute": 30},
    "dinner": {"hour": 19, "minute": 0},
    "breakfast": {"hour": 8, "minute": 0},
}

# 0 = Sunday ... 6 = Saturday
DAYS_OF_WEEK = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

_RELATIVE_IN_TEXT = re.compile(r"in\s+(\d+)\s+(minute|minutes|hour|hours)\b", re.IGNORECASE)
_TIME_24H = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
_TIME_FREE = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?", re.IGNORECASE)


class RelativeTime(BaseModel):
    unit: str
    amount: int


class TimeExpression(CamelModel):
    """Date/time fields as produced by the intent extractor."""

    date: Optional[str] = None
    time: Optional[str] = None
    time_reference: Optional[str] = None
    relative_time: Optional[RelativeTime] = None

    @field_validator("date", "time", "time_reference", "relative_time", mode="before")
    @classmethod
    def _absent(cls, value):
        return none_if_null(value)


# ---------------------------------------------------------------------------
# Timezone helpers
# ---------------------------------------------------------------------------

def get_zone(timezone_name: Optional[str]) -> Optional[ZoneInfo]:
    """Look up an IANA zone; None (with a warning) when it is unavailable."""
    if not timezone_name:
        logger.warning("No timezone configured, using naive local time")
        return None
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Timezone {timezone_name!r} unavailable ({e}), using naive local time")
        return None


def current_time(timezone_name: Optional[str] = None, now: Optional[datetime] = None) -> datetime:
    """Wall-clock "now" in the user's zone.

    Falls back to a naive local datetime when the zone cannot be loaded.
    A naive ``now`` is read as wall-clock time in the user's zone.
    """
    zone = get_zone(timezone_name)
    if zone is None:
        if now is None:
            return datetime.now()
        return now.astimezone().replace(tzinfo=None) if now.tzinfo else now
    if now is None:
        return datetime.now(zone)
    return now.astimezone(zone) if now.tzinfo else now.replace(tzinfo=zone)


def to_user_timezone(value: datetime, timezone_name: Optional[str]) -> datetime:
    """Express a stored instant (naive means UTC) in the user's zone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    zone = get_zone(timezone_name)
    return value.astimezone(zone) if zone else value


def weekday_index(value: datetime) -> int:
    """Day of week with 0 = Sunday."""
    return (value.weekday() + 1) % 7


def ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_time(value: datetime) -> str:
    """'9:05 AM' style clock time."""
    hour = value.hour % 12 or 12
    return f"{hour}:{value.minute:02d} {'AM' if value.hour < 12 else 'PM'}"


def format_for_display(value: datetime, timezone_name: Optional[str] = None) -> str:
    """'Monday, June 1st at 9:00 AM' in the user's zone."""
    if timezone_name:
        value = to_user_timezone(value, timezone_name)
    return f"{value.strftime('%A, %B')} {ordinal(value.day)} at {format_time(value)}"


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


# ---------------------------------------------------------------------------
# Date rules
# ---------------------------------------------------------------------------

class DateRule(NamedTuple):
    name: str
    pattern: "re.Pattern[str]"
    build: Callable[["re.Match[str]", datetime], datetime]


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _check_calendar_day(year: int, month: int, day: int) -> None:
    if not 1 <= month <= 12:
        raise DateParseError(f"There's no month {month}. Months run from 1 (January) to 12 (December).")
    last = days_in_month(year, month)
    if not 1 <= day <= last:
        month_name = MONTH_NAMES[month - 1].capitalize()
        raise DateParseError(
            f"There's no {ordinal(day)} day in {month_name} {year}. "
            f"{month_name} {year} has days 1 to {last}."
        )


def next_weekday(now: datetime, target: int) -> datetime:
    """Next occurrence strictly after today; a full week ahead when today matches."""
    current = weekday_index(now)
    if current == target:
        return now + timedelta(days=7)
    return now + timedelta(days=(7 + target - current) % 7)


def this_weekday(now: datetime, target: int) -> datetime:
    """Occurrence in the current week: today if it matches, otherwise the next one."""
    current = weekday_index(now)
    if target == current:
        return now
    if target > current:
        return now + timedelta(days=target - current)
    return now + timedelta(days=7 - (current - target))


def _build_iso(match, now):
    year, month, day = (int(g) for g in match.groups())
    _check_calendar_day(year, month, day)
    return _start_of_day(now).replace(year=year, month=month, day=day)


def _build_next(match, now):
    word = match.group(1)
    if word in DAYS_OF_WEEK:
        return next_weekday(now, DAYS_OF_WEEK[word])
    if word == "week":
        return now + timedelta(weeks=1)
    if word == "month":
        return now + relativedelta(months=1)
    raise DateParseError(f'I don\'t understand what you mean by "next {word}".')


def _build_in_units(match, now):
    amount = int(match.group(1))
    unit = match.group(2).rstrip("s")
    if unit == "day":
        return now + timedelta(days=amount)
    if unit == "week":
        return now + timedelta(weeks=amount)
    if unit == "month":
        return now + relativedelta(months=amount)
    if unit == "minute":
        return now + timedelta(minutes=amount)
    if unit == "hour":
        return now + timedelta(hours=amount)
    raise DateParseError(f'I don\'t understand the time unit "{match.group(2)}".')


def _build_this(match, now):
    word = match.group(1)
    if word in DAYS_OF_WEEK:
        return this_weekday(now, DAYS_OF_WEEK[word])
    if word in ("week", "month"):
        return now
    raise DateParseError(f'I don\'t understand what you mean by "this {word}".')


def _build_month_day(match, now):
    month = MONTH_NAMES.index(match.group("month")) + 1
    day = int(match.group("day"))
    year = now.year
    if (month, day) < (now.month, now.day):
        year += 1
    _check_calendar_day(year, month, day)
    return _start_of_day(now).replace(year=year, month=month, day=day)


_MONTH_ALT = "|".join(MONTH_NAMES)
_WEEKDAY_ALT = "|".join(DAYS_OF_WEEK)

DATE_RULES: List[DateRule] = [
    DateRule("iso", re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), _build_iso),
    DateRule("today", re.compile(r"^today$"), lambda m, now: now),
    DateRule("tomorrow", re.compile(r"^tomorrow$"), lambda m, now: now + timedelta(days=1)),
    DateRule("next", re.compile(r"^next\s+(\w+)$"), _build_next),
    DateRule("in_units", re.compile(r"^in\s+(\d+)\s+(\w+)$"), _build_in_units),
    DateRule("this", re.compile(r"^this\s+(\w+)$"), _build_this),
    DateRule(
        "weekday",
        re.compile(rf"^(?:on\s+)?({_WEEKDAY_ALT})$"),
        lambda m, now: this_weekday(now, DAYS_OF_WEEK[m.group(1)]),
    ),
    DateRule(
        "month_day",
        re.compile(rf"\b(?P<month>{_MONTH_ALT})\b\D*?(?P<day>\d{{1,2}})(?:st|nd|rd|th)?\b"),
        _build_month_day,
    ),
    DateRule(
        "day_month",
        re.compile(rf"\b(?P<day>\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?(?P<month>{_MONTH_ALT})\b"),
        _build_month_day,
    ),
]


def match_date_rule(date_text: str, now: datetime) -> datetime:
    """Resolve a date phrase to a datetime carrying ``now``'s time of day.

    Raises:
        DateParseError: No rule matched or a rule rejected the value
    """
    text = " ".join(date_text.lower().split())
    for rule in DATE_RULES:
        match = rule.pattern.search(text)
        if match:
            logger.info(f"Date {date_text!r} matched rule {rule.name}")
            return rule.build(match, now)

    if any(month in text for month in MONTH_NAMES):
        raise DateParseError(f'Which day of the month did you mean by "{date_text}"?')
    raise DateParseError(
        f'I couldn\'t understand the date "{date_text}". '
        f'Please try a format like "tomorrow" or "next Monday".'
    )


def is_bare_weekday(date_text: Optional[str]) -> Optional[int]:
    """Weekday index when the phrase is just a day name ("monday"), else None."""
    if not date_text:
        return None
    match = re.fullmatch(rf"(?:on\s+)?({_WEEKDAY_ALT})", " ".join(date_text.lower().split()))
    return DAYS_OF_WEEK[match.group(1)] if match else None


# ---------------------------------------------------------------------------
# Time of day
# ---------------------------------------------------------------------------

def apply_time_of_day(
    base: datetime,
    time_text: Optional[str],
    time_reference: Optional[str],
    preferences: Optional[Dict[str, Dict[str, int]]] = None,
) -> datetime:
    """Set the clock time on ``base`` from an explicit time or a named reference."""
    if time_text:
        text = time_text.strip()
        match = _TIME_24H.match(text)
        if match:
            hour, minute = int(match.group(1)), int(match.group(2))
        else:
            match = _TIME_FREE.search(text)
            if not match:
                raise DateParseError(
                    f'I couldn\'t understand the time "{time_text}". '
                    f'Please use a format like "3:00pm" or "15:00".'
                )
            hour = int(match.group(1))
            minute = int(match.group(2)) if match.group(2) else 0
            meridiem = (match.group(3) or "").lower()
            if meridiem == "pm" and hour < 12:
                hour += 12
            elif meridiem == "am" and hour == 12:
                hour = 0
            if hour > 23 or minute > 59:
                raise DateParseError(
                    f'"{time_text}" isn\'t a valid time of day. '
                    f'Please use a format like "3:00pm" or "15:00".'
                )
        return base.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if time_reference:
        key = time_reference.strip().lower()
        setting = (preferences or {}).get(key) or DEFAULT_TIME_REFERENCES.get(key)
        if not setting:
            raise DateParseError(
                f'I don\'t understand the time reference "{time_reference}". Please try using a '
                f'specific time like "3pm" or common times like "morning", "afternoon", or "evening".'
            )
        logger.info(f"Using time reference {key!r}: {setting['hour']}:{setting['minute']:02d}")
        return base.replace(hour=setting["hour"], minute=setting["minute"], second=0, microsecond=0)

    return base


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _add_elapsed(now: datetime, delta: timedelta) -> datetime:
    """Add real elapsed time (not wall-clock time) to an aware or naive instant."""
    if now.tzinfo is None:
        return now + delta
    return (now.astimezone(timezone.utc) + delta).astimezone(now.tzinfo)


def resolve(
    expression: TimeExpression,
    timezone_name: Optional[str] = None,
    preferences: Optional[Dict[str, Dict[str, int]]] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Resolve date/time fields to a single instant in the user's timezone.

    Args:
        expression: date / time / timeReference / relativeTime fields
        timezone_name: The user's IANA timezone
        preferences: The user's custom named time references
        now: Reference time (defaults to the current time)

    Returns:
        datetime: Aware datetime in the user's zone, or a naive local datetime
        when the zone is unavailable

    Raises:
        DateParseError: With a user-facing corrective message
    """
    now = current_time(timezone_name, now)

    relative = expression.relative_time
    if relative:
        unit = relative.unit.lower().rstrip("s")
        if relative.amount < 1:
            raise DateParseError("Please give a positive amount of time, like \"in 10 minutes\".")
        if unit == "minute":
            return _add_elapsed(now, timedelta(minutes=relative.amount))
        if unit == "hour":
            return _add_elapsed(now, timedelta(hours=relative.amount))
        if unit == "day":
            return now + timedelta(days=relative.amount)
        raise DateParseError(f'Unsupported time unit "{relative.unit}".')

    if expression.date:
        match = _RELATIVE_IN_TEXT.search(expression.date)
        if match:
            amount = int(match.group(1))
            unit = match.group(2).lower().rstrip("s")
            delta = timedelta(minutes=amount) if unit == "minute" else timedelta(hours=amount)
            return _add_elapsed(now, delta)

    parsed = match_date_rule(expression.date, now) if expression.date else now
    parsed = apply_time_of_day(parsed, expression.time, expression.time_reference, preferences)

    # "3pm" said at 4pm today means tomorrow at 3pm
    if parsed < now and parsed.date() == now.date():
        parsed = parsed + timedelta(days=1)
        logger.info("Time already passed today, moved to tomorrow")

    return parsed
