"""FastAPI REST API server for the Reminder Bot backend.

This module provides HTTP endpoints for three collaborators:
- the chat-bot layer (message intake webhook)
- the dispatcher (due-reminder pull and status push-back)
- the web dashboard (authenticated reminder CRUD, profile and usage)

IMPORTANT: Pydantic automatically converts ISO datetime strings to datetime objects.
Every error is rendered as {"success": false, "error", "code", "action", ...}.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import crud
import database
import identity
import intake
import quota
import schemas
from auth import get_current_user_id, require_admin
from config import settings
from errors import ErrorCode, InvalidRequestError, NotFoundError, ReminderServiceError
from logger_config import setup_logger
from reminder_parser import ReminderParser, get_parser

logger = setup_logger(__name__, 'api.log')

# Create FastAPI application
app = FastAPI(
    title="Reminder Bot API",
    description="Reminder bot backend: chat intake, dispatcher interface and dashboard CRUD",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS for dashboard access
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReminderServiceError)
async def service_error_handler(request: Request, exc: ReminderServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code.value} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code.value} ({exc.action})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    error = InvalidRequestError(message)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "code": ErrorCode.E_INTERNAL.value,
            "action": "error",
        },
    )


@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "Reminder Bot API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "intake": "/webhook/message",
            "due": "/webhook/reminders/due",
            "status": "/webhook/reminders/status",
            "reminders": "/reminders",
            "me": "/me"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "reminder_bot",
        "database": settings.DATABASE_URL.split("://")[0]
    }


# ---------------------------------------------------------------------------
# Chat-bot intake
# ---------------------------------------------------------------------------

@app.post("/webhook/message")
def receive_message(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(database.get_db),
    parser: ReminderParser = Depends(get_parser),
):
    """Handle one chat event.

    Request body example:
    ```json
    {
        "action": "create_reminder",
        "platform": "telegram",
        "chat_id": "123456789",
        "message_text": "remind me tomorrow at 3pm to call mom",
        "timezone": "Asia/Kolkata"
    }
    ```

    `action` defaults to create_reminder. The response `action` field tells
    the bot how to phrase its reply.
    """
    result = intake.dispatch(db, payload, parser=parser)
    return result.model_dump(mode="json")


@app.get("/webhook/message")
def describe_intake():
    """Self-description for bot developers"""
    return {
        "endpoint": "/webhook/message",
        "method": "POST",
        "actions": [action.value for action in intake.IntakeAction],
        "default_action": intake.IntakeAction.CREATE_REMINDER.value,
        "fields": {
            "platform": "telegram | whatsapp",
            "chat_id": "Telegram chat id",
            "phone": "WhatsApp phone number",
            "sender_id": "Platform identity when chat_id/phone are not sent",
            "user_id": "Account id (connect, or callers that already know the user)",
            "message_text": "Free-text reminder request",
            "title": "Reminder text, overrides the parsed message",
            "date": "YYYY-MM-DD; with time, bypasses the parser",
            "time": "HH:MM (24h); with date, bypasses the parser",
            "location": "Optional location",
            "timezone": f"IANA timezone (default {settings.DEFAULT_USER_TIMEZONE})",
            "use_ai_parsing": "Parse message_text (default true)",
            "reminder_id": "Reminder to cancel",
        },
        "languages": ["English", "Hindi"],
        "examples": [
            "remind me tomorrow at 3pm to call mom",
            "set reminder for meeting in 2 hours",
            "याद दिलाओ कल सुबह 9 बजे दवाई लेनी है",
        ],
    }


# ---------------------------------------------------------------------------
# Dispatcher interface
# ---------------------------------------------------------------------------

def _due_item(reminder: database.Reminder, user: database.User) -> schemas.DueReminderResponse:
    return schemas.DueReminderResponse(
        **schemas.ReminderResponse.model_validate(reminder).model_dump(),
        telegram_chat_id=user.telegram_chat_id,
        whatsapp_phone=user.whatsapp_phone,
        bot_name=user.bot_name,
        user_email=user.email,
    )


@app.get("/webhook/reminders/due", response_model=schemas.DueRemindersResponse)
def get_due_reminders(
    now: Optional[datetime] = Query(None, description="Cutoff (ISO 8601), defaults to the current time"),
    db: Session = Depends(database.get_db)
):
    """Pending reminders whose time has come, with contact fields attached.

    Returns at most DUE_BATCH_SIZE reminders, soonest first.
    """
    checked_at = database.as_utc(now) if now else database.utcnow()
    due = crud.fetch_due_reminders(db, now=checked_at)
    items = [_due_item(reminder, user) for reminder, user in due]
    return schemas.DueRemindersResponse(reminders=items, count=len(items), checked_at=checked_at)


@app.post("/webhook/reminders/status", response_model=schemas.StatusUpdateResponse)
def update_reminder_status(
    update: schemas.StatusUpdateRequest,
    db: Session = Depends(database.get_db)
):
    """Record a delivery outcome.

    Request body example:
    ```json
    {"reminder_id": "9b2c...", "status": "sent"}
    ```
    """
    reminder = crud.mark_status(db, update.reminder_id, update.status)
    return schemas.StatusUpdateResponse(
        message=f"Reminder marked as {reminder.status.value}",
        reminder=schemas.ReminderWithContact.model_validate(reminder),
    )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

def _current_user(db: Session, user_id: str) -> database.User:
    user = identity.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


@app.get("/reminders", response_model=schemas.ReminderListResponse)
def list_reminders(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """List the current user's reminders, newest first."""
    return schemas.ReminderListResponse(reminders=crud.list_reminders(db, user_id))


@app.post("/reminders", response_model=schemas.ReminderCreatedResponse, status_code=201)
def create_reminder(
    reminder: schemas.ReminderCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Create a reminder with an explicit time.

    Request body example:
    ```json
    {
        "message": "Call mom",
        "reminder_time": "2025-10-26T15:00:00+05:30",
        "platform": "telegram"
    }
    ```

    Counts against the daily API-call quota and the monthly reminder quota.
    """
    _current_user(db, user_id)
    # Both reservations commit with the insert or not at all
    quota.reserve_api_call(db, user_id, commit=False)
    created, status = crud.create_reminder(
        db,
        user_id=user_id,
        message=reminder.message,
        reminder_time=reminder.reminder_time,
        platform=reminder.platform,
        location=reminder.location,
    )
    return schemas.ReminderCreatedResponse(
        reminder=schemas.ReminderResponse.model_validate(created),
        remaining=status.remaining,
        limit=status.limit,
    )


@app.delete("/reminders/{reminder_id}", status_code=200)
def delete_reminder(
    reminder_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Delete one of the current user's reminders.

    Deleting a reminder that does not exist, or belongs to someone else,
    reports the same success.
    """
    crud.delete_reminder(db, reminder_id, user_id)
    return {"success": True, "reminder_id": reminder_id}


@app.get("/me", response_model=schemas.UserProfile)
def get_profile(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Current user's profile and platform connections."""
    return _current_user(db, user_id)


@app.patch("/me/settings", response_model=schemas.UserProfile)
def update_settings(
    update: schemas.SettingsUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Update the current user's settings (bot display name)."""
    return identity.update_bot_name(db, user_id, update.bot_name)


@app.get("/me/usage", response_model=schemas.UsageResponse)
def get_usage(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Current quota status for reminders and API calls."""
    user = _current_user(db, user_id)
    tier = user.subscription_tier
    return schemas.UsageResponse(
        tier=tier,
        reminders=quota.check_reminder_limit(db, user_id),
        api_calls=quota.check_api_limit(db, user_id),
    )


@app.get("/stats", dependencies=[Depends(require_admin)])
def get_stats(db: Session = Depends(database.get_db)):
    """Aggregate user and reminder counts for the admin dashboard. Requires X-Admin-Key."""
    return crud.get_stats(db)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
