"""Pydantic schemas for the Reminder Bot backend.

This module defines request and response schemas for API validation,
including the per-action message-intake requests and their results.
IMPORTANT: Pydantic automatically parses ISO datetime strings to datetime objects.
"""

from datetime import datetime
from typing import List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator, model_validator
from typing_extensions import Annotated

from config import settings
from database import PlatformEnum, StatusEnum, SubscriptionTier


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------

class QuotaStatus(BaseModel):
    """Result of a quota check.

    A limit of -1 means unbounded; remaining is then -1 as well.
    """

    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    error: Optional[str] = None


class UsageResponse(BaseModel):
    """Both quota counters for the current user."""

    tier: SubscriptionTier
    reminders: QuotaStatus
    api_calls: QuotaStatus


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

class ReminderResponse(BaseModel):
    """Schema for reminder responses.

    Datetime fields are aware UTC datetimes, serialized to ISO strings in JSON.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Unique reminder ID")
    user_id: str = Field(..., description="Owning user ID")
    message: str = Field(..., description="What to remind about")
    reminder_time: datetime = Field(..., description="When the reminder is due (UTC)")
    platform: PlatformEnum = Field(..., description="Delivery platform")
    status: StatusEnum = Field(..., description="Current status")
    location: Optional[str] = Field(None, description="Location if mentioned")
    sent_at: Optional[datetime] = Field(None, description="Delivery time, set iff status is sent")
    created_at: datetime = Field(..., description="When the reminder was created")


class UserContact(BaseModel):
    """Contact fields the dispatcher needs to deliver without a second lookup."""

    model_config = ConfigDict(from_attributes=True)

    telegram_chat_id: Optional[str] = None
    whatsapp_phone: Optional[str] = None
    bot_name: Optional[str] = None
    email: str


class ReminderWithContact(ReminderResponse):
    user: UserContact


class DueReminderResponse(ReminderResponse):
    """Flattened due reminder as handed to the dispatcher."""

    telegram_chat_id: Optional[str] = None
    whatsapp_phone: Optional[str] = None
    bot_name: Optional[str] = None
    user_email: str


class DueRemindersResponse(BaseModel):
    success: bool = True
    reminders: List[DueReminderResponse]
    count: int
    checked_at: datetime
    action: Literal["due_reminders_fetched"] = "due_reminders_fetched"


class StatusUpdateRequest(BaseModel):
    """Dispatcher callback body."""

    reminder_id: str = Field(..., min_length=1)
    status: StatusEnum = StatusEnum.SENT


class StatusUpdateResponse(BaseModel):
    success: bool = True
    message: str
    reminder: ReminderWithContact
    action: Literal["status_updated"] = "status_updated"


class ReminderCreate(BaseModel):
    """Dashboard request for creating a reminder with an explicit time.

    A naive reminder_time is taken as UTC.
    """

    message: str = Field(..., min_length=1, max_length=500, examples=["Call mom"])
    reminder_time: datetime = Field(
        ...,
        description="When the reminder is due (ISO 8601 format)",
        examples=["2025-10-26T15:00:00Z", "2025-10-26T15:00:00+05:30"]
    )
    platform: PlatformEnum
    location: Optional[str] = None


class ReminderCreatedResponse(BaseModel):
    reminder: ReminderResponse
    remaining: int
    limit: int


class ReminderListResponse(BaseModel):
    reminders: List[ReminderResponse]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class UserProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    bot_name: str
    whatsapp_connected: bool
    telegram_connected: bool
    telegram_chat_id: Optional[str] = None
    whatsapp_phone: Optional[str] = None
    subscription_tier: SubscriptionTier


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    bot_name: str = Field(..., min_length=1, max_length=50)


# ---------------------------------------------------------------------------
# Message intake
# ---------------------------------------------------------------------------

class _IntakeBase(BaseModel):
    """Identity fields shared by every intake action.

    telegram identifies the sender by chat_id (or sender_id), whatsapp by phone
    (or sender_id); user_id is accepted as a fallback on every platform.
    """

    platform: Optional[PlatformEnum] = None
    sender_id: Optional[str] = None
    chat_id: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("sender_id", "chat_id", "phone", "user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v):
        # Telegram sends numeric chat ids
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def platform_identity(self) -> Optional[str]:
        if self.platform == PlatformEnum.TELEGRAM:
            return self.chat_id or self.sender_id
        if self.platform == PlatformEnum.WHATSAPP:
            return self.phone or self.sender_id
        return None


class ConnectRequest(_IntakeBase):
    action: Literal["connect"]


class CreateReminderRequest(_IntakeBase):
    action: Literal["create_reminder"]
    message_text: Optional[str] = None
    title: Optional[str] = None
    date: Optional[str] = Field(None, description="YYYY-MM-DD; with time, bypasses the parser")
    time: Optional[str] = Field(None, description="HH:MM (24h); with date, bypasses the parser")
    location: Optional[str] = None
    timezone: str = Field(default_factory=lambda: settings.DEFAULT_USER_TIMEZONE)
    use_ai_parsing: bool = True

    @field_validator("timezone")
    @classmethod
    def _validate_tz(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"timezone '{v}' is not a valid IANA timezone")
        return v


class ListRemindersRequest(_IntakeBase):
    action: Literal["list_reminders"]


class CancelReminderRequest(_IntakeBase):
    action: Literal["cancel_reminder"]
    reminder_id: Optional[str] = None


IntakeRequest = Annotated[
    Union[ConnectRequest, CreateReminderRequest, ListRemindersRequest, CancelReminderRequest],
    Field(discriminator="action"),
]


class MessageIntake(RootModel[IntakeRequest]):
    """Inbound chat event; `action` defaults to create_reminder."""

    @model_validator(mode="before")
    @classmethod
    def _default_action(cls, data):
        if isinstance(data, dict) and not data.get("action"):
            data = {**data, "action": "create_reminder"}
        return data


class IntakeResult(BaseModel):
    success: bool = True
    message: Optional[str] = None


class ConnectResult(IntakeResult):
    action: Literal["connected", "already_connected", "signup_required"]
    user_id: Optional[str] = None


class ReminderCreatedResult(IntakeResult):
    action: Literal["reminder_created"] = "reminder_created"
    reminder: ReminderResponse
    remaining: int
    limit: int


class RemindersListedResult(IntakeResult):
    action: Literal["reminders_listed"] = "reminders_listed"
    reminders: List[ReminderResponse]
    count: int


class ReminderCancelledResult(IntakeResult):
    action: Literal["reminder_cancelled"] = "reminder_cancelled"
    reminder: ReminderResponse
