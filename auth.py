"""Session token handling for the dashboard API.

Tokens are issued by the web login flow as base64-encoded JSON
`{"userId", "email", "exp"}` with `exp` in epoch milliseconds. This module
only validates them; every failure is reported the same way.

Admin endpoints use a shared `X-Admin-Key` secret instead.
"""

import base64
import binascii
import hmac
import json
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Header

from config import settings
from database import as_utc, utcnow
from errors import AdminOnlyError, UnauthenticatedError
from logger_config import setup_logger

logger = setup_logger(__name__, 'api.log')

BEARER_PREFIX = "bearer "


def encode_session_token(user_id: str, email: str, expires_in: timedelta = timedelta(days=7),
                         now: Optional[datetime] = None) -> str:
    expires_at = as_utc(now or utcnow()) + expires_in
    payload = {"userId": user_id, "email": email, "exp": int(expires_at.timestamp() * 1000)}
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_session_token(token: Optional[str], now: Optional[datetime] = None) -> str:
    """Validate a session token and return its user id.

    Raises:
        UnauthenticatedError: missing, malformed or expired token
    """
    if not token:
        raise UnauthenticatedError()
    try:
        padded = token.strip() + "=" * (-len(token.strip()) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_")))
        user_id = payload["userId"]
        expires_ms = int(payload["exp"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
        logger.info("Rejected malformed session token")
        raise UnauthenticatedError()

    if not isinstance(user_id, str) or not user_id:
        raise UnauthenticatedError()
    if expires_ms <= as_utc(now or utcnow()).timestamp() * 1000:
        logger.info(f"Rejected expired session token for user {user_id}")
        raise UnauthenticatedError()
    return user_id


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the user id from an `Authorization: Bearer <token>` header."""
    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        raise UnauthenticatedError()
    return decode_session_token(authorization[len(BEARER_PREFIX):])


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    """FastAPI dependency: reject requests without the configured `X-Admin-Key`."""
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise AdminOnlyError()
    # Constant-time comparison
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning("Rejected admin request with a missing or wrong key")
        raise AdminOnlyError()
