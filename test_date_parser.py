"""Tests for the time expression resolver."""

from datetime import date, datetime, timedelta, timezone

import pytest

from date_parser import (
    TimeExpression, apply_time_of_day, format_for_display, is_bare_weekday,
    match_date_rule, resolve,
)
from errors import DateParseError

UTC = timezone.utc


def expr(**fields):
    return TimeExpression(**fields)


def test_tomorrow_at_explicit_time(now):
    result = resolve(expr(date="tomorrow", time="17:00"), "UTC", now=now)
    assert result == datetime(2025, 5, 21, 17, 0, tzinfo=UTC)


@pytest.mark.parametrize("hour,minute", [(0, 0), (9, 30), (23, 59)])
def test_tomorrow_is_next_calendar_day_whatever_the_hour(hour, minute):
    at = datetime(2025, 5, 20, hour, minute, tzinfo=UTC)
    result = resolve(expr(date="tomorrow"), "UTC", now=at)
    assert result.date() == date(2025, 5, 21)


@pytest.mark.parametrize("day,clock,expected", [
    ("2025-06-01", "09:00", "Sunday, June 1st at 9:00 AM"),
    ("2025-12-22", "18:45", "Monday, December 22nd at 6:45 PM"),
    ("2026-01-03", "00:05", "Saturday, January 3rd at 12:05 AM"),
])
def test_iso_date_and_time_round_trip_through_display(now, day, clock, expected):
    result = resolve(expr(date=day, time=clock), "UTC", now=now)
    assert result.strftime("%Y-%m-%d %H:%M") == f"{day} {clock}"
    assert format_for_display(result, "UTC") == expected


def test_february_29th_needs_a_leap_year(now):
    with pytest.raises(DateParseError) as exc:
        resolve(expr(date="2027-02-29", time="09:00"), "UTC", now=now)
    assert "days 1 to 28" in exc.value.message

    result = resolve(expr(date="2028-02-29", time="09:00"), "UTC", now=now)
    assert result.date() == date(2028, 2, 29)


def test_named_month_day_checks_the_calendar():
    with pytest.raises(DateParseError):
        resolve(expr(date="February 29th"), "UTC", now=datetime(2027, 1, 10, 8, 0, tzinfo=UTC))

    result = resolve(expr(date="February 29th"), "UTC", now=datetime(2028, 1, 10, 8, 0, tzinfo=UTC))
    assert result.date() == date(2028, 2, 29)


def test_invalid_iso_day_names_the_valid_range(now):
    with pytest.raises(DateParseError) as exc:
        resolve(expr(date="2025-04-35"), "UTC", now=now)
    assert "April 2025 has days 1 to 30" in exc.value.message


def test_month_day_already_passed_rolls_to_next_year(now):
    assert resolve(expr(date="April 15th", time="10:00"), "UTC", now=now).date() == date(2026, 4, 15)
    assert resolve(expr(date="15 june", time="10:00"), "UTC", now=now).date() == date(2025, 6, 15)


def test_next_weekday_skips_a_full_week_when_today_matches(now):
    assert resolve(expr(date="next tuesday", time="09:00"), "UTC", now=now).date() == date(2025, 5, 27)
    assert resolve(expr(date="next friday", time="09:00"), "UTC", now=now).date() == date(2025, 5, 23)


def test_this_weekday_keeps_today_when_it_matches(now):
    assert resolve(expr(date="this tuesday", time="17:00"), "UTC", now=now).date() == date(2025, 5, 20)
    assert resolve(expr(date="this monday", time="17:00"), "UTC", now=now).date() == date(2025, 5, 26)
    assert resolve(expr(date="this thursday", time="17:00"), "UTC", now=now).date() == date(2025, 5, 22)


def test_bare_weekday_resolves_like_this_weekday(now):
    assert resolve(expr(date="friday", time="12:00"), "UTC", now=now).date() == date(2025, 5, 23)
    assert is_bare_weekday("on Friday") == 5
    assert is_bare_weekday("next friday") is None


def test_in_units(now):
    assert resolve(expr(date="in 3 days", time="08:00"), "UTC", now=now).date() == date(2025, 5, 23)
    assert resolve(expr(date="in 2 weeks", time="08:00"), "UTC", now=now).date() == date(2025, 6, 3)
    assert resolve(expr(date="in 1 month", time="08:00"), "UTC", now=now).date() == date(2025, 6, 20)


def test_relative_time_bypasses_other_fields(now):
    result = resolve(
        TimeExpression.model_validate({
            "date": "2030-01-01", "time": "09:00",
            "relativeTime": {"unit": "minutes", "amount": 30},
        }),
        "UTC", now=now,
    )
    assert result == now + timedelta(minutes=30)


def test_relative_phrase_inside_date(now):
    assert resolve(expr(date="in 2 hours"), "UTC", now=now) == now + timedelta(hours=2)


def test_relative_time_must_be_positive(now):
    with pytest.raises(DateParseError):
        resolve(TimeExpression.model_validate({"relativeTime": {"unit": "hours", "amount": 0}}), "UTC", now=now)


def test_null_strings_mean_absent(now):
    result = resolve(
        TimeExpression.model_validate({"date": "null", "time": "17:00", "timeReference": "null"}),
        "UTC", now=now,
    )
    assert result == datetime(2025, 5, 20, 17, 0, tzinfo=UTC)


def test_unrecognised_date_is_an_error(now):
    with pytest.raises(DateParseError) as exc:
        resolve(expr(date="someday soon", time="10:00"), "UTC", now=now)
    assert "couldn't understand the date" in exc.value.message


def test_past_time_today_moves_to_tomorrow():
    four_pm = datetime(2025, 5, 20, 16, 0, tzinfo=UTC)
    result = resolve(expr(time="3pm"), "UTC", now=four_pm)
    assert result == datetime(2025, 5, 21, 15, 0, tzinfo=UTC)


def test_past_date_is_left_for_the_validator(now):
    result = resolve(expr(date="2025-05-18", time="09:00"), "UTC", now=now)
    assert result == datetime(2025, 5, 18, 9, 0, tzinfo=UTC)


@pytest.mark.parametrize("text,hour,minute", [
    ("14:30", 14, 30),
    ("3pm", 15, 0),
    ("3:15 PM", 15, 15),
    ("12am", 0, 0),
    ("12pm", 12, 0),
    ("7", 7, 0),
])
def test_clock_formats(now, text, hour, minute):
    result = apply_time_of_day(now, text, None)
    assert (result.hour, result.minute, result.second) == (hour, minute, 0)


@pytest.mark.parametrize("text", ["25:00", "7:75pm", "quarter past"])
def test_invalid_clock_values(now, text):
    with pytest.raises(DateParseError):
        apply_time_of_day(now, text, None)


def test_time_reference_defaults_and_user_preferences(now):
    assert apply_time_of_day(now, None, "evening").hour == 18
    assert apply_time_of_day(now, None, "lunch").minute == 30

    custom = apply_time_of_day(now, None, "Morning", {"morning": {"hour": 7, "minute": 30}})
    assert (custom.hour, custom.minute) == (7, 30)


def test_unknown_time_reference_lists_examples(now):
    with pytest.raises(DateParseError) as exc:
        apply_time_of_day(now, None, "brunchtime")
    assert "morning" in exc.value.message


def test_match_date_rule_rejects_month_without_day(now):
    with pytest.raises(DateParseError) as exc:
        match_date_rule("sometime in march", now)
    assert "Which day of the month" in exc.value.message


def test_user_timezone_is_applied(now):
    result = resolve(expr(date="tomorrow", time="17:00"), "Asia/Kolkata", now=now)
    assert result.utcoffset() == timedelta(hours=5, minutes=30)
    assert result.astimezone(UTC) == datetime(2025, 5, 21, 11, 30, tzinfo=UTC)


def test_degrades_gracefully_without_timezone(now, caplog):
    result = resolve(expr(date="tomorrow", time="17:00"), "Mars/Olympus_Mons", now=now)

    assert result.tzinfo is None
    local_today = now.astimezone().date()
    assert result.date() == local_today + timedelta(days=1)
    assert (result.hour, result.minute) == (17, 0)
    assert "using naive local time" in caplog.text
