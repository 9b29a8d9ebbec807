"""Database module for the Reminder Assistant.

This module defines SQLAlchemy models and database session management.
IMPORTANT: scheduled_for is stored as a DateTime object in UTC, NOT a string.
"""

from sqlalchemy import (
    create_engine, Boolean, Column, Date, DateTime, ForeignKey, JSON, String, Text,
    Enum as SQLEnum, Index,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
import enum

from config import settings

# SQLAlchemy Base
Base = declarative_base()


class NotificationMethodEnum(enum.Enum):
    """Channels a reminder can be delivered on"""
    WHATSAPP = "whatsapp"
    VOICE = "voice"
    BOTH = "both"


class RecurrenceEnum(enum.Enum):
    """Recurrence kinds"""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class StatusEnum(enum.Enum):
    """Reminder lifecycle: pending -> sent -> acknowledged, or cancelled"""
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    CANCELLED = "cancelled"


class User(Base):
    """User model - one row per phone number.

    conversation_state holds the serialized dialogue stage (see schemas.ConversationState).
    time_preferences maps a named reference to {"hour": int, "minute": int}.
    """

    __tablename__ = "users"

    id = Column(String, primary_key=True, doc="Unique user ID (UUID)")
    phone_number = Column(String, nullable=False, unique=True, index=True, doc="WhatsApp phone number")
    name = Column(String, nullable=True)
    timezone = Column(String, nullable=False, default=settings.DEFAULT_TIMEZONE, doc="IANA timezone name")
    preferred_notification_method = Column(
        SQLEnum(NotificationMethodEnum),
        default=NotificationMethodEnum.WHATSAPP,
        nullable=False,
    )
    time_preferences = Column(JSON, default=dict, doc="Custom named time references")
    conversation_state = Column(JSON, default=lambda: {"stage": "initial"}, doc="Current dialogue stage")
    active = Column(Boolean, default=True)
    last_interaction = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    reminders = relationship("Reminder", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, phone={self.phone_number}, tz={self.timezone})>"


class Reminder(Base):
    """Reminder model - stores all reminder data.

    Recurring reminders are a chain of independent rows: every instance points
    at the first one (series_origin_id) and at the one it was advanced from
    (previous_instance_id).
    """

    __tablename__ = "reminders"

    id = Column(String, primary_key=True, doc="Unique reminder ID (UUID)")
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    content = Column(Text, nullable=False, doc="What to remind about")

    # CRITICAL: DateTime object, NOT string!
    scheduled_for = Column(
        DateTime(timezone=True),
        nullable=False,
        doc="When the reminder fires (UTC)"
    )

    recurrence = Column(SQLEnum(RecurrenceEnum), default=RecurrenceEnum.NONE, nullable=False)
    recurrence_pattern = Column(JSON, nullable=True, doc="Serialized schemas.RecurrencePattern")
    end_date = Column(Date, nullable=True, doc="Last day the recurrence may run")

    status = Column(SQLEnum(StatusEnum), default=StatusEnum.PENDING, index=True, nullable=False)
    notification_method = Column(
        SQLEnum(NotificationMethodEnum),
        default=NotificationMethodEnum.WHATSAPP,
        nullable=False,
    )

    series_origin_id = Column(String, nullable=True, index=True)
    previous_instance_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    user = relationship("User", back_populates="reminders")

    __table_args__ = (
        Index('idx_user_status', 'user_id', 'status'),
        Index('idx_scheduled_for', 'scheduled_for'),
        Index('idx_user_scheduled', 'user_id', 'scheduled_for'),
    )

    def __repr__(self):
        return (
            f"<Reminder(id={self.id}, user={self.user_id}, "
            f"content={self.content}, at={self.scheduled_for}, status={self.status.value})>"
        )


# Database Engine Setup
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in settings.DATABASE_URL else {},
    echo=False  # Set to True for SQL debugging
)

# Session Factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Database session dependency for FastAPI.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables on the given engine (defaults to the configured one)."""
    Base.metadata.create_all(bind=bind or engine)


# Create all tables
init_db()
