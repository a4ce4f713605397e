"""Message intake for the chat-bot layer.

Each inbound chat event carries an `action`; it is validated into the matching
request model and routed through ACTION_HANDLERS. Handlers return a typed
result whose `action` field tells the bot layer how to phrase its reply.
Failures are raised as ReminderServiceError subclasses, whose `action` is
likewise one of the echo values (not_a_reminder, missing_data,
invalid_datetime, limit_reached, connect_required, ...).
"""

import enum
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

import crud
from database import PlatformEnum, User
from errors import (
    InvalidRequestError, ParseFailureError, QuotaExceededError, UserNotConnectedError,
)
from identity import ConnectOutcome, connect_identity, get_user, resolve_user
from logger_config import setup_logger
from quota import check_reminder_limit
from reminder_parser import ReminderParser, get_parser, to_utc_datetime
from schemas import (
    CancelReminderRequest, ConnectRequest, ConnectResult, CreateReminderRequest,
    IntakeRequest, IntakeResult, ListRemindersRequest, MessageIntake,
    ReminderCancelledResult, ReminderCreatedResult, ReminderResponse, RemindersListedResult,
)

logger = setup_logger(__name__, 'intake.log')


class IntakeAction(str, enum.Enum):
    CONNECT = "connect"
    CREATE_REMINDER = "create_reminder"
    LIST_REMINDERS = "list_reminders"
    CANCEL_REMINDER = "cancel_reminder"


def parse_intake(payload: Any) -> IntakeRequest:
    """Validate a raw intake body; action defaults to create_reminder.

    Raises:
        InvalidRequestError: unknown action or malformed fields
    """
    try:
        return MessageIntake.model_validate(payload).root
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidRequestError(f"Invalid request: {problems}")


def _require_user(db: Session, request) -> User:
    """Resolve the sender to an account.

    The platform identity wins; user_id is the fallback for callers that
    already know the account (web dashboard, agents).
    """
    platform_id = request.platform_identity()
    user = None
    if platform_id:
        user = resolve_user(db, request.platform, platform_id)
    if user is None and request.user_id:
        user = get_user(db, request.user_id)
    if user is None:
        if not platform_id and not request.user_id:
            raise InvalidRequestError("platform and sender identity are required")
        raise UserNotConnectedError()
    return user


def _delivery_platform(request, user: User) -> PlatformEnum:
    if request.platform is not None:
        return request.platform
    if user.telegram_connected:
        return PlatformEnum.TELEGRAM
    if user.whatsapp_connected:
        return PlatformEnum.WHATSAPP
    raise InvalidRequestError("platform is required")


def handle_connect(db: Session, request: ConnectRequest, **_) -> ConnectResult:
    platform_id = request.platform_identity()
    if request.platform is None or not platform_id:
        raise InvalidRequestError("platform and sender identity are required")

    result = connect_identity(db, request.platform, platform_id, request.user_id)
    platform_name = request.platform.value.capitalize()
    if result.outcome == ConnectOutcome.CONNECTED:
        message = f"Your {platform_name} account is connected. Send me a reminder any time!"
    elif result.outcome == ConnectOutcome.ALREADY_CONNECTED:
        message = f"This {platform_name} account is already connected."
    else:
        message = "Please sign up on the dashboard first, then connect your account from there."

    return ConnectResult(
        success=result.outcome != ConnectOutcome.SIGNUP_REQUIRED,
        action=result.outcome.value,
        user_id=result.user_id,
        message=message,
    )


def handle_create_reminder(db: Session, request: CreateReminderRequest,
                           parser: Optional[ReminderParser] = None,
                           now: Optional[datetime] = None) -> ReminderCreatedResult:
    """Create a reminder from a chat message.

    Order: resolve the sender, check the monthly quota (so over-quota users
    cost no parsing), resolve what and when, then create. Explicit date and
    time bypass the parser.
    """
    user = _require_user(db, request)

    status = check_reminder_limit(db, user.id, now=now)
    if not status.allowed:
        raise QuotaExceededError(
            limit=status.limit,
            used=user.reminders_count_this_month,
            reset_at=status.reset_at,
        )

    message = request.title or request.message_text
    location = request.location
    if request.date and request.time:
        date_str, time_str = request.date, request.time
    elif not request.message_text:
        raise InvalidRequestError("message_text is required")
    elif not request.use_ai_parsing:
        raise InvalidRequestError("date and time are required when parsing is disabled")
    else:
        intent = (parser or get_parser()).parse(request.message_text, request.timezone, now=now)
        if not intent.is_reminder:
            raise ParseFailureError(intent.error_message or "This doesn't look like a reminder request.")
        message = request.title or intent.message
        location = location or intent.location
        date_str, time_str = intent.date, intent.time

    if not message or not message.strip():
        raise InvalidRequestError("What should I remind you about?")

    reminder_time = to_utc_datetime(date_str, time_str, request.timezone)
    if reminder_time is None:
        raise ParseFailureError(
            "I couldn't work out when to remind you. Please include a date and time.",
            action="invalid_datetime",
        )

    reminder, quota_status = crud.create_reminder(
        db,
        user_id=user.id,
        message=message,
        reminder_time=reminder_time,
        platform=_delivery_platform(request, user),
        location=location,
        now=now,
    )
    logger.info(f"Intake created reminder {reminder.id} for user {user.id}")

    return ReminderCreatedResult(
        message=f"Reminder set: {reminder.message} on {date_str} at {time_str}",
        reminder=ReminderResponse.model_validate(reminder),
        remaining=quota_status.remaining,
        limit=quota_status.limit,
    )


def handle_list_reminders(db: Session, request: ListRemindersRequest, **_) -> RemindersListedResult:
    user = _require_user(db, request)
    reminders = crud.list_pending_reminders(db, user.id)
    if reminders:
        message = f"You have {len(reminders)} upcoming reminder{'s' if len(reminders) != 1 else ''}."
    else:
        message = "You have no upcoming reminders."
    return RemindersListedResult(
        message=message,
        reminders=[ReminderResponse.model_validate(r) for r in reminders],
        count=len(reminders),
    )


def handle_cancel_reminder(db: Session, request: CancelReminderRequest, **_) -> ReminderCancelledResult:
    if not request.reminder_id:
        raise InvalidRequestError("reminder_id is required")
    user = _require_user(db, request)
    reminder = crud.cancel_reminder(db, request.reminder_id, user_id=user.id)
    return ReminderCancelledResult(
        message=f"Cancelled reminder: {reminder.message}",
        reminder=ReminderResponse.model_validate(reminder),
    )


ACTION_HANDLERS: Dict[IntakeAction, Callable[..., IntakeResult]] = {
    IntakeAction.CONNECT: handle_connect,
    IntakeAction.CREATE_REMINDER: handle_create_reminder,
    IntakeAction.LIST_REMINDERS: handle_list_reminders,
    IntakeAction.CANCEL_REMINDER: handle_cancel_reminder,
}


def dispatch(db: Session, request: Any, parser: Optional[ReminderParser] = None,
             now: Optional[datetime] = None) -> IntakeResult:
    """Route one intake request (model or raw dict) to its handler."""
    if not isinstance(request, (ConnectRequest, CreateReminderRequest,
                                ListRemindersRequest, CancelReminderRequest)):
        request = parse_intake(request)
    action = IntakeAction(request.action)
    logger.info(f"Intake action={action.value} platform={request.platform.value if request.platform else '-'}")
    return ACTION_HANDLERS[action](db, request, parser=parser, now=now)
