"""CRUD operations for the Reminder Assistant.

This module provides database operations for users and reminders.
IMPORTANT: All datetime parameters and return values are datetime objects, NOT strings.
Instants are persisted in UTC; naive datetimes are taken to already be UTC.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from config import settings
from database import (
    NotificationMethodEnum, RecurrenceEnum, Reminder, StatusEnum, User,
)
from errors import PersistenceFailure, ValidationError
from logger_config import setup_logger

logger = setup_logger(__name__, 'crud.log')

# Allowed forward moves; cancelled and acknowledged are terminal.
_STATUS_TRANSITIONS = {
    StatusEnum.PENDING: {StatusEnum.SENT, StatusEnum.ACKNOWLEDGED, StatusEnum.CANCELLED},
    StatusEnum.SENT: {StatusEnum.ACKNOWLEDGED, StatusEnum.CANCELLED},
    StatusEnum.ACKNOWLEDGED: set(),
    StatusEnum.CANCELLED: set(),
}


def as_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime (naive input is assumed to be UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def _transaction(db: Session, operation: str):
    """Commit on success; roll back and raise PersistenceFailure on database errors."""
    try:
        yield
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {operation}: {str(e)}")
        raise PersistenceFailure(operation) from e


@contextmanager
def _reading(db: Session, operation: str):
    """Roll back and raise PersistenceFailure when a query fails."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {operation}: {str(e)}")
        raise PersistenceFailure(operation) from e


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_user(db: Session, user_id: str) -> Optional[User]:
    with _reading(db, "get_user"):
        return db.get(User, user_id)


def get_user_by_phone(db: Session, phone_number: str) -> Optional[User]:
    with _reading(db, "get_user_by_phone"):
        return db.query(User).filter(User.phone_number == phone_number).first()


def get_or_create_user(db: Session, phone_number: str, timezone_name: Optional[str] = None) -> User:
    """Find a user by phone number, creating one on first contact.

    Args:
        db: Database session
        phone_number: Sender phone number (unique key)
        timezone_name: Optional IANA timezone for a new user

    Returns:
        User: Existing or newly created user
    """
    user = get_user_by_phone(db, phone_number)
    if user:
        return user

    now = datetime.now(timezone.utc)
    user = User(
        id=str(uuid.uuid4()),
        phone_number=phone_number,
        timezone=timezone_name or settings.DEFAULT_TIMEZONE,
        preferred_notification_method=NotificationMethodEnum.WHATSAPP,
        time_preferences={},
        conversation_state={"stage": "initial"},
        created_at=now,
        updated_at=now,
    )
    with _transaction(db, "create_user"):
        db.add(user)
    db.refresh(user)
    logger.info(f"Created user {user.id} for {phone_number}")
    return user


def save_user(db: Session, user: User) -> User:
    """Persist pending changes on a user (conversation state, preferences, ...)."""
    user.updated_at = datetime.now(timezone.utc)
    flag_modified(user, 'conversation_state')
    flag_modified(user, 'time_preferences')
    with _transaction(db, "save_user"):
        db.add(user)
    return user


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

def create_reminder(db: Session, reminder_data: dict) -> Reminder:
    """Create a new reminder in the database.

    Args:
        db: Database session
        reminder_data: Dictionary with reminder fields
            - user_id: str
            - content: str
            - scheduled_for: datetime (MUST be datetime object!)
            - recurrence: Optional[str]
            - recurrence_pattern: Optional[dict]
            - end_date: Optional[date]
            - notification_method: Optional[str]
            - series_origin_id / previous_instance_id: Optional[str]

    Returns:
        Reminder: Created reminder object

    Raises:
        PersistenceFailure: On database errors
    """
    reminder_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc)

    recurrence = reminder_data.get('recurrence') or 'none'
    if isinstance(recurrence, str):
        recurrence = RecurrenceEnum(recurrence)

    method = reminder_data.get('notification_method') or 'whatsapp'
    if isinstance(method, str):
        method = NotificationMethodEnum(method)

    db_reminder = Reminder(
        id=reminder_id,
        user_id=reminder_data['user_id'],
        content=reminder_data['content'],
        scheduled_for=as_utc(reminder_data['scheduled_for']),
        recurrence=recurrence,
        recurrence_pattern=reminder_data.get('recurrence_pattern'),
        end_date=reminder_data.get('end_date'),
        status=StatusEnum.PENDING,
        notification_method=method,
        series_origin_id=reminder_data.get('series_origin_id'),
        previous_instance_id=reminder_data.get('previous_instance_id'),
        created_at=now,
        updated_at=now,
    )

    with _transaction(db, "create_reminder"):
        db.add(db_reminder)
    db.refresh(db_reminder)
    logger.info(f"Created reminder {reminder_id} for user {db_reminder.user_id} at {db_reminder.scheduled_for}")
    return db_reminder


def get_reminder(db: Session, reminder_id: str, user_id: Optional[str] = None) -> Optional[Reminder]:
    """Get a specific reminder by ID, optionally scoped to its owner."""
    with _reading(db, "get_reminder"):
        query = db.query(Reminder).filter(Reminder.id == reminder_id)
        if user_id:
            query = query.filter(Reminder.user_id == user_id)
        return query.first()


def get_reminders_by_ids(db: Session, reminder_ids: List[str]) -> List[Reminder]:
    """Fetch reminders preserving the order of reminder_ids (missing ones are skipped)."""
    if not reminder_ids:
        return []
    with _reading(db, "get_reminders_by_ids"):
        rows = {r.id: r for r in db.query(Reminder).filter(Reminder.id.in_(reminder_ids)).all()}
    return [rows[i] for i in reminder_ids if i in rows]


def get_reminders_by_user(db: Session, user_id: str, include_cancelled: bool = False) -> List[Reminder]:
    """Get a user's reminders ordered by scheduled time."""
    with _reading(db, "get_reminders_by_user"):
        query = db.query(Reminder).filter(Reminder.user_id == user_id)
        if not include_cancelled:
            query = query.filter(Reminder.status != StatusEnum.CANCELLED)
        return query.order_by(Reminder.scheduled_for).all()


def get_reminders_in_range(db: Session, user_id: str, start: datetime, end: datetime) -> List[Reminder]:
    """Get a user's non-cancelled reminders with start <= scheduled_for <= end."""
    with _reading(db, "get_reminders_in_range"):
        return db.query(Reminder).filter(
            Reminder.user_id == user_id,
            Reminder.status != StatusEnum.CANCELLED,
            Reminder.scheduled_for >= as_utc(start),
            Reminder.scheduled_for <= as_utc(end),
        ).order_by(Reminder.scheduled_for).all()


def search_reminders(db: Session, user_id: str, query: str) -> List[Reminder]:
    """Substring search over a user's non-cancelled reminder content."""
    search_pattern = f"%{query}%"
    with _reading(db, "search_reminders"):
        return db.query(Reminder).filter(
            Reminder.user_id == user_id,
            Reminder.status != StatusEnum.CANCELLED,
            Reminder.content.ilike(search_pattern),
        ).order_by(Reminder.scheduled_for).all()


def update_reminder_status(db: Session, reminder_id: str, status: str) -> Optional[Reminder]:
    """Move a reminder along its lifecycle.

    Raises:
        ValidationError: If the move goes backwards or leaves a terminal status
        PersistenceFailure: On database errors
    """
    reminder = get_reminder(db, reminder_id)
    if not reminder:
        return None

    new_status = StatusEnum(status) if isinstance(status, str) else status
    if new_status == reminder.status:
        return reminder
    if new_status not in _STATUS_TRANSITIONS[reminder.status]:
        raise ValidationError(
            f"Cannot move reminder from {reminder.status.value} to {new_status.value}",
            reason="invalid_status_transition",
        )

    reminder.status = new_status
    reminder.updated_at = datetime.now(timezone.utc)
    with _transaction(db, "update_reminder_status"):
        db.add(reminder)
    return reminder


def update_reminder(db: Session, reminder_id: str, updates: Dict) -> Optional[Reminder]:
    """Update content / schedule fields of an existing reminder.

    Only keys with non-None values are applied.
    """
    reminder = get_reminder(db, reminder_id)
    if not reminder:
        return None

    for key, value in updates.items():
        if value is None:
            continue
        if key == 'scheduled_for':
            value = as_utc(value)
        elif key == 'recurrence' and isinstance(value, str):
            value = RecurrenceEnum(value)
        setattr(reminder, key, value)
        if key == 'recurrence_pattern':
            flag_modified(reminder, 'recurrence_pattern')

    reminder.updated_at = datetime.now(timezone.utc)
    with _transaction(db, "update_reminder"):
        db.add(reminder)
    db.refresh(reminder)
    return reminder


def delete_reminder(db: Session, reminder_id: str) -> bool:
    """Hard-delete a reminder. Conversation flows cancel instead."""
    reminder = get_reminder(db, reminder_id)
    if not reminder:
        return False

    with _transaction(db, "delete_reminder"):
        db.delete(reminder)
    return True


def get_due_reminders(db: Session, now: Optional[datetime] = None) -> List[Reminder]:
    """Get all pending reminders whose scheduled time has arrived."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    with _reading(db, "get_due_reminders"):
        return db.query(Reminder).filter(
            Reminder.status == StatusEnum.PENDING,
            Reminder.scheduled_for <= now,
        ).order_by(Reminder.scheduled_for).all()


def create_next_instance(db: Session, reminder: Reminder, next_time: datetime) -> Reminder:
    """Create the following pending instance of a recurring reminder.

    The new row is independent; it links back to the series origin and to
    the instance it was advanced from.
    """
    return create_reminder(db, {
        'user_id': reminder.user_id,
        'content': reminder.content,
        'scheduled_for': next_time,
        'recurrence': reminder.recurrence,
        'recurrence_pattern': reminder.recurrence_pattern,
        'end_date': reminder.end_date,
        'notification_method': reminder.notification_method,
        'series_origin_id': reminder.series_origin_id or reminder.id,
        'previous_instance_id': reminder.id,
    })
