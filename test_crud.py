"""Tests for CRUD operations with datetime handling."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.exc import OperationalError

import crud
from config import settings
from database import NotificationMethodEnum, RecurrenceEnum, StatusEnum
from errors import PersistenceFailure, ValidationError

UTC = timezone.utc


def add(db, user, content, when, **extra):
    return crud.create_reminder(db, {"user_id": user.id, "content": content, "scheduled_for": when, **extra})


def test_create_reminder(db, user, now):
    reminder = add(db, user, "Test Meeting", now + timedelta(hours=2))

    assert isinstance(reminder.scheduled_for, datetime), "scheduled_for should be datetime object!"
    assert isinstance(reminder.created_at, datetime), "created_at should be datetime object!"
    assert crud.as_utc(reminder.scheduled_for) == now + timedelta(hours=2)
    assert reminder.status == StatusEnum.PENDING
    assert reminder.recurrence == RecurrenceEnum.NONE
    assert reminder.notification_method == NotificationMethodEnum.WHATSAPP
    assert reminder.user.phone_number == "+15550001111"


def test_local_times_are_stored_as_utc(db, user):
    kolkata = datetime(2025, 5, 21, 20, 0, tzinfo=ZoneInfo("Asia/Kolkata"))
    reminder = add(db, user, "call home", kolkata)
    assert crud.as_utc(reminder.scheduled_for) == datetime(2025, 5, 21, 14, 30, tzinfo=UTC)


def test_get_or_create_user(db):
    first = crud.get_or_create_user(db, "+15550002222")
    again = crud.get_or_create_user(db, "+15550002222", "UTC")

    assert first.id == again.id
    assert first.timezone == settings.DEFAULT_TIMEZONE
    assert first.conversation_state == {"stage": "initial"}
    assert crud.get_user(db, first.id) is first


def test_get_reminder_is_scoped_to_owner(db, user, now):
    reminder = add(db, user, "Test Meeting", now + timedelta(hours=2))
    stranger = crud.get_or_create_user(db, "+15550003333", "UTC")

    assert crud.get_reminder(db, reminder.id).id == reminder.id
    assert crud.get_reminder(db, reminder.id, user.id).id == reminder.id
    assert crud.get_reminder(db, reminder.id, stranger.id) is None


def test_listing_hides_cancelled(db, user, now):
    later = add(db, user, "later", now + timedelta(hours=3))
    sooner = add(db, user, "sooner", now + timedelta(hours=1))
    gone = add(db, user, "gone", now + timedelta(hours=2))
    crud.update_reminder_status(db, gone.id, "cancelled")

    assert [r.id for r in crud.get_reminders_by_user(db, user.id)] == [sooner.id, later.id]
    assert len(crud.get_reminders_by_user(db, user.id, include_cancelled=True)) == 3


def test_get_reminders_by_ids_keeps_order(db, user, now):
    a = add(db, user, "a", now + timedelta(hours=1))
    b = add(db, user, "b", now + timedelta(hours=2))
    assert [r.id for r in crud.get_reminders_by_ids(db, [b.id, "missing", a.id])] == [b.id, a.id]
    assert crud.get_reminders_by_ids(db, []) == []


def test_range_is_inclusive(db, user, now):
    edge = add(db, user, "edge", now + timedelta(hours=1))
    add(db, user, "outside", now + timedelta(hours=2))

    found = crud.get_reminders_in_range(db, user.id, now, now + timedelta(hours=1))
    assert [r.id for r in found] == [edge.id]


def test_search_is_case_insensitive(db, user, now):
    add(db, user, "Call Mom", now + timedelta(hours=1))
    add(db, user, "buy milk", now + timedelta(hours=2))
    assert [r.content for r in crud.search_reminders(db, user.id, "call")] == ["Call Mom"]


def test_status_moves_forward_only(db, user, now):
    reminder = add(db, user, "pills", now)

    assert crud.update_reminder_status(db, reminder.id, "sent").status == StatusEnum.SENT
    assert crud.update_reminder_status(db, reminder.id, StatusEnum.SENT).status == StatusEnum.SENT
    with pytest.raises(ValidationError) as exc:
        crud.update_reminder_status(db, reminder.id, "pending")
    assert exc.value.reason == "invalid_status_transition"

    crud.update_reminder_status(db, reminder.id, "acknowledged")
    with pytest.raises(ValidationError):
        crud.update_reminder_status(db, reminder.id, "cancelled")

    assert crud.update_reminder_status(db, "missing", "sent") is None


def test_update_reminder_ignores_none(db, user, now):
    reminder = add(db, user, "Test Meeting", now + timedelta(hours=2))
    new_time = now + timedelta(hours=3)

    updated = crud.update_reminder(db, reminder.id, {"content": None, "scheduled_for": new_time})

    assert updated.content == "Test Meeting"
    assert crud.as_utc(updated.scheduled_for) == new_time
    assert crud.update_reminder(db, "missing", {"content": "x"}) is None


def test_delete_reminder(db, user, now):
    reminder = add(db, user, "Test Meeting", now)
    assert crud.delete_reminder(db, reminder.id) is True
    assert crud.get_reminder(db, reminder.id) is None
    assert crud.delete_reminder(db, reminder.id) is False


def test_due_reminders(db, user, now):
    due = add(db, user, "due", now - timedelta(minutes=5))
    add(db, user, "future", now + timedelta(minutes=5))
    sent = add(db, user, "already sent", now - timedelta(minutes=10))
    crud.update_reminder_status(db, sent.id, "sent")

    assert [r.id for r in crud.get_due_reminders(db, now)] == [due.id]


def test_next_instance_links_to_series(db, user, now):
    first = add(db, user, "standup", now, recurrence="daily",
                recurrence_pattern={"frequency": "day", "interval": 1})
    second = crud.create_next_instance(db, first, now + timedelta(days=1))
    third = crud.create_next_instance(db, second, now + timedelta(days=2))

    assert second.recurrence == RecurrenceEnum.DAILY
    assert second.recurrence_pattern == {"frequency": "day", "interval": 1}
    assert (second.series_origin_id, second.previous_instance_id) == (first.id, first.id)
    assert (third.series_origin_id, third.previous_instance_id) == (first.id, second.id)


def test_database_errors_become_persistence_failures(db, user, now, monkeypatch):
    def broken():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "commit", broken)

    with pytest.raises(PersistenceFailure) as exc:
        add(db, user, "pills", now)
    assert exc.value.operation == "create_reminder"


@pytest.mark.parametrize("operation,call", [
    ("get_user_by_phone", lambda db, user, now: crud.get_user_by_phone(db, user.phone_number)),
    ("get_reminder", lambda db, user, now: crud.get_reminder(db, "missing-id")),
    ("get_reminders_by_ids", lambda db, user, now: crud.get_reminders_by_ids(db, ["missing-id"])),
    ("get_reminders_by_user", lambda db, user, now: crud.get_reminders_by_user(db, user.id)),
    ("get_reminders_in_range", lambda db, user, now: crud.get_reminders_in_range(db, user.id, now, now)),
    ("search_reminders", lambda db, user, now: crud.search_reminders(db, user.id, "pills")),
    ("get_due_reminders", lambda db, user, now: crud.get_due_reminders(db, now)),
])
def test_failed_reads_become_persistence_failures(db, user, now, monkeypatch, operation, call):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "query", broken)

    with pytest.raises(PersistenceFailure) as exc:
        call(db, user, now)
    assert exc.value.operation == operation
