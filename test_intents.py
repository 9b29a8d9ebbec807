"""Tests for intent validation, JSON extraction and voice classification."""

import pytest

from errors import UpstreamParseFailure
from intents import (
    IntentDispatcher, classify_speech, extract_delay_minutes, extract_json,
    fallback_intent, parse_intent,
)


def test_reminder_payload_with_camel_case_fields():
    intent = parse_intent({
        "type": "reminder",
        "content": "team meeting",
        "date": "next monday",
        "time": "10:00",
        "timeReference": "null",
        "recurrence": "weekly",
        "recurrencePattern": {"frequency": "week", "interval": 1, "dayOfWeek": 1},
        "endDate": None,
    })

    assert intent.type == "reminder"
    assert intent.time_reference is None
    assert intent.recurrence_pattern.day_of_week == 1
    assert intent.end_date is None


def test_missing_accepts_a_single_string():
    intent = parse_intent({"type": "incomplete_reminder", "content": "call mom", "missing": "time"})
    assert intent.missing == ["time"]


def test_update_payload_carries_changes():
    intent = parse_intent({
        "type": "update_reminder",
        "identifier": "dentist",
        "updates": {"time": "16:00", "date": "null"},
    })
    assert intent.identifier == "dentist"
    assert intent.updates.time == "16:00"
    assert intent.updates.date is None


def test_defaults_for_sparse_payloads():
    assert parse_intent({"type": "list_reminders"}).filter == "all"
    assert parse_intent({"type": "delete_reminder", "identifier": "gym"}).identifier_type == "content"
    assert parse_intent({"type": "confirmation", "confirmed": True}).confirmed is True


@pytest.mark.parametrize("payload", [
    {"type": "teleport", "where": "mars"},
    {"content": "no type at all"},
    {"type": "selection", "index": "first"},
    ["not", "an", "object"],
])
def test_unusable_payloads_become_unrecognized(payload):
    assert parse_intent(payload).type == "unrecognized"


def test_unrecognized_keeps_the_raw_type():
    assert parse_intent({"type": "teleport"}).raw_type == "teleport"


@pytest.mark.parametrize("content", [
    '{"type": "list_reminders"}',
    'Sure!\n```json\n{"type": "list_reminders"}\n```',
    '```\n{"type": "list_reminders"}\n```',
    'Here you go: {"type": "list_reminders"} hope that helps',
])
def test_extract_json_variants(content):
    assert extract_json(content) == {"type": "list_reminders"}


@pytest.mark.parametrize("content", ["", None, "no json here", "{not json}", "[1, 2]"])
def test_extract_json_failures(content):
    with pytest.raises(UpstreamParseFailure) as exc:
        extract_json(content)
    assert exc.value.raw == content


def test_fallback_for_reminder_looking_text():
    intent = fallback_intent("Remind me to stretch")
    assert intent.type == "incomplete_reminder"
    assert intent.content == "Remind me to stretch"
    assert intent.missing == ["date", "time"]


def test_fallback_for_anything_else():
    intent = fallback_intent("hello there")
    assert intent.type == "not_reminder"
    assert intent.content == "unrecognized message format"


def test_dispatcher_routes_and_defaults():
    dispatcher = IntentDispatcher(default="fallback")
    dispatcher.register("reminder", "create")

    assert dispatcher.handler_for("reminder") == "create"
    assert dispatcher.handler_for("selection") == "fallback"
    assert "reminder" in dispatcher
    assert "selection" not in dispatcher


@pytest.mark.parametrize("speech,intent", [
    ("Yes, I took them", "completed"),
    ("done", "completed"),
    ("not now, I'm driving", "delay"),
    ("snooze", "delay"),
    ("please cancel this one", "cancel"),
    ("stop reminding me", "cancel"),
    ("what is the weather", "unknown"),
    ("", "unknown"),
    (None, "unknown"),
])
def test_classify_speech(speech, intent):
    assert classify_speech(speech).intent == intent


def test_completion_wins_over_delay():
    assert classify_speech("yes but remind me later").intent == "completed"


@pytest.mark.parametrize("speech,minutes", [
    ("later, in 10 minutes", 10),
    ("snooze for 2 hours", 120),
    ("later, in half an hour", 30),
    ("postpone a quarter hour", 15),
    ("later in an hour", 60),
    ("remind me later", 30),
])
def test_delay_minutes(speech, minutes):
    result = classify_speech(speech)
    assert result.intent == "delay"
    assert result.minutes == minutes


def test_extract_delay_minutes_abbreviations():
    assert extract_delay_minutes("give me 5 mins") == 5
    assert extract_delay_minutes("1 hr") == 60
