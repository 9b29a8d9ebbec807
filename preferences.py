"""User preference store: custom time references, timezone and notification channel."""

from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

import crud
from config import settings
from database import NotificationMethodEnum, User
from date_parser import DEFAULT_TIME_REFERENCES
from errors import ValidationError
from logger_config import setup_logger

logger = setup_logger(__name__, 'preferences.log')


def _clock(setting: Dict[str, int]) -> str:
    return f"{setting['hour']}:{setting['minute']:02d}"


def get_time_preferences(user: User) -> Dict[str, Dict[str, int]]:
    """Named time references for a user: defaults overlaid with their own."""
    merged = dict(DEFAULT_TIME_REFERENCES)
    merged.update(user.time_preferences or {})
    return merged


def set_time_preference(db: Session, user: User, reference: str, hour: int, minute: int = 0) -> User:
    """Store a custom time for a named reference ("morning" -> 7:30).

    Raises:
        ValidationError: Empty reference or out-of-range clock values
    """
    if not reference or not str(reference).strip():
        raise ValidationError("Please tell me which time reference to change, like \"morning\".")
    try:
        hour, minute = int(hour), int(minute)
    except (TypeError, ValueError):
        raise ValidationError("Please give the time as hours and minutes, like 7:30.", reason="invalid_time")
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ValidationError("Hours must be 0-23 and minutes 0-59.", reason="invalid_time")

    key = str(reference).strip().lower()
    preferences = dict(user.time_preferences or {})
    preferences[key] = {"hour": hour, "minute": minute}
    user.time_preferences = preferences
    crud.save_user(db, user)
    logger.info(f"User {user.id} set time reference {key!r} to {hour}:{minute:02d}")
    return user


def set_timezone(db: Session, user: User, timezone_name: str) -> User:
    """Change a user's timezone; only supported, loadable IANA zones are accepted."""
    if timezone_name not in settings.AVAILABLE_TIMEZONES:
        raise ValidationError(
            f"Sorry, I don't support the timezone \"{timezone_name}\". "
            f"Available timezones: {', '.join(settings.AVAILABLE_TIMEZONES)}.",
            reason="invalid_timezone",
        )
    try:
        ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError:
        raise ValidationError(f"The timezone \"{timezone_name}\" isn't available on this server.",
                              reason="invalid_timezone")

    user.timezone = timezone_name
    crud.save_user(db, user)
    logger.info(f"User {user.id} timezone set to {timezone_name}")
    return user


def set_notification_method(db: Session, user: User, method: str) -> User:
    try:
        user.preferred_notification_method = NotificationMethodEnum((method or "").strip().lower())
    except ValueError:
        raise ValidationError(
            "Notification method must be one of: whatsapp, voice, both.",
            reason="invalid_notification_method",
        )
    crud.save_user(db, user)
    logger.info(f"User {user.id} notification method set to {user.preferred_notification_method.value}")
    return user


def _reference_from(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("reference")
    return value if isinstance(value, str) else None


def handle_preference_command(db: Session, user: User, action: str,
                              preference_type: Optional[str], value: Any = None) -> str:
    """Apply a get/set preference command and return the reply text.

    Raises:
        ValidationError: For invalid values; the caller turns it into a reply
    """
    action = (action or "get").lower()

    if preference_type == "timezone":
        if action == "set":
            set_timezone(db, user, str(value or "").strip())
            return f"✅ Your timezone has been updated to {user.timezone}."
        return f"Your current timezone is set to {user.timezone or settings.DEFAULT_TIMEZONE}."

    if preference_type == "time_reference":
        preferences = get_time_preferences(user)
        if action == "set":
            if not isinstance(value, dict):
                raise ValidationError("Please tell me the reference and time, like \"set morning to 7:30\".")
            reference = value.get("reference")
            set_time_preference(db, user, reference, value.get("hour"), value.get("minute") or 0)
            key = reference.strip().lower()
            return f"✅ Your \"{key}\" time preference has been set to {_clock(user.time_preferences[key])}."

        reference = _reference_from(value)
        if reference:
            key = reference.strip().lower()
            if key not in preferences:
                return f"You haven't set a \"{key}\" time yet."
            return f"Your \"{key}\" time is set to {_clock(preferences[key])}."
        lines = [f"• {name}: {_clock(setting)}" for name, setting in sorted(preferences.items())]
        return "Your time references:\n" + "\n".join(lines)

    if preference_type == "notification_method":
        if action == "set":
            set_notification_method(db, user, str(value or ""))
            return f"✅ I'll notify you via {user.preferred_notification_method.value}."
        method = user.preferred_notification_method or NotificationMethodEnum.WHATSAPP
        return f"Your reminders are delivered via {method.value}."

    return (
        "I can update your timezone, time references (like \"morning\") "
        "or how you're notified (whatsapp, voice or both)."
    )
