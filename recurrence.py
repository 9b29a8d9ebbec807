"""Recurrence engine.

Reads recurrence phrases ("every Monday and Wednesday until December"),
computes the next occurrence of a rule and renders rules for confirmations.
"""

import re
from datetime import date, datetime, timedelta
from typing import Dict, Optional, Union

from dateutil.relativedelta import relativedelta

from date_parser import (
    DAY_NAMES, DAYS_OF_WEEK, MONTH_NAMES, days_in_month, ordinal, weekday_index,
)
from logger_config import setup_logger
from schemas import RecurrenceParse, RecurrencePattern

logger = setup_logger(__name__, 'recurrence.log')

_WEEKDAY_ALT = "|".join(DAYS_OF_WEEK)
_EVERY_N = re.compile(r"every\s+(\d+)\s+(days?|weeks?|months?|years?)\b")
_EVERY_OTHER = re.compile(rf"every\s+other\s+(day|week|month|year|{_WEEKDAY_ALT})\b")
_EVERY_WEEKDAY = re.compile(rf"every\s+({_WEEKDAY_ALT})\b")
_UNTIL = re.compile(
    r"until\s+(\d{4}-\d{2}-\d{2}|[a-z]+(?:\s+\d{1,2}(?:st|nd|rd|th)?)?(?:,?\s+\d{4})?)"
)

_SIMPLE_KINDS = {"daily": "day", "weekly": "week", "monthly": "month"}


def pattern_for_kind(kind: Optional[str]) -> Optional[RecurrencePattern]:
    """Rule for the simple recurrence kinds (daily/weekly/monthly), interval 1."""
    frequency = _SIMPLE_KINDS.get((kind or "").lower())
    return RecurrencePattern(frequency=frequency, interval=1) if frequency else None


def parse_end_date(text: str, now: Optional[datetime] = None) -> Optional[date]:
    """Extract the date named by an "until ..." clause.

    A bare month means the last day of its nearest future occurrence.
    """
    match = _UNTIL.search(text.lower())
    if not match:
        return None

    value = match.group(1).strip()
    today = (now or datetime.now()).date()

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        try:
            return date.fromisoformat(value)
        except ValueError:
            logger.warning(f"Ignoring invalid end date {value!r}")
            return None

    parts = re.fullmatch(r"([a-z]+)(?:\s+(\d{1,2})(?:st|nd|rd|th)?)?(?:,?\s+(\d{4}))?", value)
    if not parts or parts.group(1) not in MONTH_NAMES:
        logger.info(f"Until clause {value!r} does not name a month or date")
        return None

    month = MONTH_NAMES.index(parts.group(1)) + 1
    day = int(parts.group(2)) if parts.group(2) else None
    if parts.group(3):
        year = int(parts.group(3))
    elif day is None:
        year = today.year if month >= today.month else today.year + 1
    else:
        year = today.year if (month, day) >= (today.month, today.day) else today.year + 1

    last = days_in_month(year, month)
    if day is None:
        return date(year, month, last)
    if not 1 <= day <= last:
        logger.warning(f"Ignoring end date with impossible day {value!r}")
        return None
    return date(year, month, day)


def parse_pattern(text: Optional[str], now: Optional[datetime] = None) -> Optional[RecurrenceParse]:
    """Read a recurrence phrase.

    Precedence: several weekdays, every day/daily, every week/weekly,
    every month/monthly, every N <unit>, every other <unit|weekday>,
    every <weekday>. Returns None when the text describes no recurrence.
    """
    if not text:
        return None

    lower = " ".join(text.lower().split())
    end_date = parse_end_date(lower, now)

    def result(recurrence: str, **rule) -> RecurrenceParse:
        return RecurrenceParse(
            recurrence=recurrence,
            pattern=RecurrencePattern(**rule),
            end_date=end_date,
        )

    mentioned = sorted({num for name, num in DAYS_OF_WEEK.items() if name in lower})
    if len(mentioned) > 1:
        return result("custom", frequency="week", interval=1, days_of_week=mentioned)

    if "every day" in lower or "daily" in lower:
        return result("daily", frequency="day", interval=1)

    if "every week" in lower or "weekly" in lower:
        return result("weekly", frequency="week", interval=1)

    if "every month" in lower or "monthly" in lower:
        return result("monthly", frequency="month", interval=1)

    match = _EVERY_N.search(lower)
    if match:
        return result("custom", frequency=match.group(2).rstrip("s"), interval=int(match.group(1)))

    match = _EVERY_OTHER.search(lower)
    if match:
        unit = match.group(1)
        if unit in DAYS_OF_WEEK:
            return result("custom", frequency="week", interval=2, day_of_week=DAYS_OF_WEEK[unit])
        return result("custom", frequency=unit, interval=2)

    match = _EVERY_WEEKDAY.search(lower)
    if match:
        return result("custom", frequency="week", interval=1, day_of_week=DAYS_OF_WEEK[match.group(1)])

    return None


def _as_pattern(pattern: Union[RecurrencePattern, Dict, None]) -> Optional[RecurrencePattern]:
    if pattern is None or isinstance(pattern, RecurrencePattern):
        return pattern
    return RecurrencePattern.model_validate(pattern)


def next_occurrence(
    base: datetime,
    pattern: Union[RecurrencePattern, Dict, None],
    end_date: Union[date, datetime, None] = None,
) -> Optional[datetime]:
    """Compute the occurrence after ``base``.

    Args:
        base: The occurrence just delivered, in the user's local zone
        pattern: Recurrence rule (model or its stored dict form)
        end_date: Optional last day of the recurrence

    Returns:
        datetime: The next occurrence, or None when the recurrence has ended
    """
    rule = _as_pattern(pattern)
    if rule is None:
        return None

    if rule.frequency == "day":
        result = base + timedelta(days=rule.interval)

    elif rule.frequency == "week":
        current = weekday_index(base)
        if rule.days_of_week:
            days = sorted(set(rule.days_of_week))
            later = [d for d in days if d > current]
            if later:
                result = base + timedelta(days=later[0] - current)
            else:
                result = base + timedelta(days=7 - current + days[0])
        elif rule.day_of_week is not None:
            result = base + timedelta(weeks=rule.interval)
            shift = (rule.day_of_week - weekday_index(result) + 7) % 7
            result = result + timedelta(days=shift)
        else:
            result = base + timedelta(weeks=rule.interval)

    elif rule.frequency == "month":
        result = base + relativedelta(months=rule.interval)
        if rule.day_of_month is not None:
            result = result.replace(day=min(rule.day_of_month, days_in_month(result.year, result.month)))

    elif rule.frequency == "year":
        result = base + relativedelta(years=rule.interval)

    else:
        return None

    if end_date is not None:
        last = end_date.date() if isinstance(end_date, datetime) else end_date
        if not result.date() < last:
            logger.info(f"Recurrence ended: next occurrence {result.date()} is not before {last}")
            return None

    return result


def _long_date(value: Union[date, datetime]) -> str:
    return f"{value.strftime('%B')} {ordinal(value.day)}, {value.year}"


def _join_days(names) -> str:
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


def describe(
    pattern: Union[RecurrencePattern, Dict, None],
    start: Optional[datetime] = None,
    end: Union[date, datetime, None] = None,
) -> str:
    """Human-readable rule, e.g. "every Monday and Wednesday starting June 2nd, 2025"."""
    rule = _as_pattern(pattern)
    if rule is None:
        return "One-time reminder"

    if rule.interval == 1:
        phrase = "every"
    elif rule.interval == 2:
        phrase = "every other"
    else:
        phrase = f"every {rule.interval}"
    plural = "s" if rule.interval > 2 else ""

    if rule.frequency == "day":
        description = f"{phrase} day{plural}"
    elif rule.frequency == "week":
        if rule.days_of_week:
            description = f"{phrase} {_join_days([DAY_NAMES[d] for d in sorted(set(rule.days_of_week))])}"
        elif rule.day_of_week is not None:
            description = f"{phrase} {DAY_NAMES[rule.day_of_week]}"
        else:
            description = f"{phrase} week{plural}"
    elif rule.frequency == "month":
        description = f"{phrase} month{plural}"
        if rule.day_of_month:
            description += f" on the {ordinal(rule.day_of_month)}"
    elif rule.frequency == "year":
        description = f"{phrase} year{plural}"
    else:
        return "Custom recurrence"

    if start:
        description += f" starting {_long_date(start)}"
    if end:
        description += f" until {_long_date(end)}"
    return description
