"""Database module for the Reminder Bot backend.

This module defines SQLAlchemy models and database session management.
IMPORTANT: every timestamp is stored in UTC and read back as a timezone-aware
datetime, whatever the backing database does with time zones.
"""

from sqlalchemy import (
    create_engine, Column, String, Integer, Boolean, DateTime, ForeignKey,
    Enum as SQLEnum, Index
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
import enum
import uuid

from config import settings

# SQLAlchemy Base
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime column that always binds UTC and always returns aware UTC.

    SQLite drops tzinfo on storage, so values are normalized on the way in
    and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


class SubscriptionTier(str, enum.Enum):
    """Subscription levels; each maps to a set of quota limits"""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class PlatformEnum(str, enum.Enum):
    """Chat platforms a reminder can be delivered on"""
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class StatusEnum(str, enum.Enum):
    """Status values for reminders"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """User account with platform bindings and usage counters.

    A platform identity (WhatsApp phone or Telegram chat id) belongs to at most
    one user; the unique indexes enforce it.
    """

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id, doc="Unique user ID (UUID)")
    email = Column(String, nullable=False, unique=True, doc="Login email")

    # Platform bindings
    whatsapp_connected = Column(Boolean, nullable=False, default=False)
    whatsapp_phone = Column(String, nullable=True, unique=True, doc="Digits-only phone number")
    telegram_connected = Column(Boolean, nullable=False, default=False)
    telegram_chat_id = Column(String, nullable=True, unique=True, doc="Telegram chat id")

    bot_name = Column(String, nullable=False, default=lambda: settings.DEFAULT_BOT_NAME,
                      doc="Display name the bot uses with this user")
    subscription_tier = Column(SQLEnum(SubscriptionTier), nullable=False, default=SubscriptionTier.FREE)

    # Usage counters; each reset_at marks the start of the period its counter covers
    reminders_count_this_month = Column(Integer, nullable=False, default=0)
    reminders_reset_at = Column(UTCDateTime, nullable=True, default=utcnow)
    api_calls_today = Column(Integer, nullable=False, default=0)
    api_calls_reset_at = Column(UTCDateTime, nullable=True, default=utcnow)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    reminders = relationship("Reminder", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, tier={self.subscription_tier.value})>"


class Reminder(Base):
    """A scheduled reminder owned by exactly one user.

    reminder_time is absolute UTC. sent_at is set iff status is SENT.
    """

    __tablename__ = "reminders"

    id = Column(String, primary_key=True, default=_new_id, doc="Unique reminder ID (UUID)")
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    message = Column(String, nullable=False, doc="What to remind about")
    reminder_time = Column(UTCDateTime, nullable=False, doc="When the reminder is due (UTC)")
    platform = Column(SQLEnum(PlatformEnum), nullable=False)
    status = Column(SQLEnum(StatusEnum), nullable=False, default=StatusEnum.PENDING, index=True)
    location = Column(String, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="reminders")

    # Composite indexes for the due-poll and the chat listing
    __table_args__ = (
        Index('idx_status_time', 'status', 'reminder_time'),
        Index('idx_user_status_time', 'user_id', 'status', 'reminder_time'),
    )

    def __repr__(self):
        return (
            f"<Reminder(id={self.id}, user={self.user_id}, "
            f"message={self.message}, due={self.reminder_time}, status={self.status.value})>"
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


# Create all tables
Base.metadata.create_all(bind=engine)
