"""Error taxonomy for the Reminder Bot backend.

Every failure a caller can act on is a ReminderServiceError. Each carries a
stable code, an HTTP status, and the `action` value the chat layer branches on
when phrasing its reply.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

EXAMPLE_HINT = (
    "Say something like: 'remind me tomorrow at 3pm to call mom' "
    "or 'याद दिलाओ कल 9 बजे meeting है'"
)


class ErrorCode(str, Enum):
    """Standardized error codes."""

    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"
    E_ADMIN_ONLY = "E_ADMIN_ONLY"
    E_NOT_FOUND = "E_NOT_FOUND"
    E_USER_NOT_CONNECTED = "E_USER_NOT_CONNECTED"
    E_QUOTA_EXCEEDED = "E_QUOTA_EXCEEDED"
    E_PARSE_FAILURE = "E_PARSE_FAILURE"
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_TRANSITION = "E_INVALID_TRANSITION"
    E_INTERNAL = "E_INTERNAL"


ERROR_CODE_TO_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.E_UNAUTHENTICATED: 401,
    ErrorCode.E_ADMIN_ONLY: 403,
    ErrorCode.E_NOT_FOUND: 404,
    ErrorCode.E_USER_NOT_CONNECTED: 404,
    ErrorCode.E_QUOTA_EXCEEDED: 429,
    ErrorCode.E_PARSE_FAILURE: 400,
    ErrorCode.E_INVALID_REQUEST: 400,
    ErrorCode.E_INVALID_TRANSITION: 409,
    ErrorCode.E_INTERNAL: 500,
}


class ReminderServiceError(Exception):
    """Base exception for service errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        action: Outcome echo for the chat layer
        details: Extra fields rendered alongside the message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ErrorCode, message: str, action: str = "error",
                 details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.action = action
        self.details = details or {}
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "error": self.message,
            "code": self.code.value,
            "action": self.action,
        }
        body.update(self.details)
        return body


class UnauthenticatedError(ReminderServiceError):
    """Missing, malformed or expired identity token. The cause is never exposed."""

    def __init__(self):
        super().__init__(ErrorCode.E_UNAUTHENTICATED, "Unauthorized", action="unauthenticated")


class AdminOnlyError(ReminderServiceError):
    def __init__(self):
        super().__init__(ErrorCode.E_ADMIN_ONLY, "Admin access required", action="forbidden")


class NotFoundError(ReminderServiceError):
    def __init__(self, message: str = "Not found", action: str = "not_found"):
        super().__init__(ErrorCode.E_NOT_FOUND, message, action=action)


class UserNotConnectedError(ReminderServiceError):
    """A chat identity that no account is bound to."""

    def __init__(self, message: str = "User not connected. Please connect your account first."):
        super().__init__(ErrorCode.E_USER_NOT_CONNECTED, message, action="connect_required")


class QuotaExceededError(ReminderServiceError):
    def __init__(self, limit: int, used: int, reset_at: datetime, message: Optional[str] = None):
        self.limit = limit
        self.used = used
        self.reset_at = reset_at
        super().__init__(
            ErrorCode.E_QUOTA_EXCEEDED,
            message or (
                f"You've reached your monthly limit of {limit} reminders. "
                "Upgrade to Pro for unlimited reminders!"
            ),
            action="limit_reached",
            details={"limit": limit, "used": used, "reset_at": reset_at.isoformat()},
        )


class ParseFailureError(ReminderServiceError):
    """Free text that is not a reminder, or whose date/time cannot be resolved."""

    def __init__(self, message: str, action: str = "not_a_reminder", hint: str = EXAMPLE_HINT):
        super().__init__(ErrorCode.E_PARSE_FAILURE, message, action=action, details={"hint": hint})


class InvalidRequestError(ReminderServiceError):
    def __init__(self, message: str = "Invalid request", action: str = "missing_data"):
        super().__init__(ErrorCode.E_INVALID_REQUEST, message, action=action)


class InvalidTransitionError(ReminderServiceError):
    def __init__(self, current: str, requested: str):
        super().__init__(
            ErrorCode.E_INVALID_TRANSITION,
            f"Cannot move reminder from '{current}' to '{requested}'",
            action="invalid_transition",
            details={"current_status": current, "requested_status": requested},
        )
