"""MCP Server for the Reminder Bot backend.

This module provides MCP tools for AI agents acting on behalf of a chat user.
Every tool runs through the same intake dispatch as the chat webhook, so
quota, parsing and identity rules are identical.

Transport Support:
- stdio: Standard input/output (local process communication)
- sse: Server-Sent Events over HTTP (network access, scalable)
"""

import os
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

import database
import intake
import quota
from config import settings
from errors import ReminderServiceError
from identity import get_user
from logger_config import setup_logger

logger = setup_logger(__name__, 'mcp.log')
logger.info("MCP Server initialized")

# Create FastMCP server with host and port from settings
mcp = FastMCP(
    "ReminderBot",
    host=settings.MCP_HOST,
    port=settings.MCP_PORT
)


def _identity_fields(platform: str, sender_id: str) -> Dict[str, Any]:
    return {"platform": platform.lower(), "sender_id": sender_id}


def _run(payload: Dict[str, Any]):
    db = database.SessionLocal()
    try:
        return intake.dispatch(db, payload)
    finally:
        db.close()


def _format_error(e: ReminderServiceError) -> str:
    text = f"✗ {e.message}"
    if "hint" in e.details:
        text += f"\n{e.details['hint']}"
    return text


@mcp.tool()
def connect_account(platform: str, sender_id: str, user_id: Optional[str] = None) -> str:
    """Connect a chat identity to a web account.

    Args:
        platform: "telegram" or "whatsapp"
        sender_id: Telegram chat id or WhatsApp phone number
        user_id: Account to bind to (from the dashboard); omit to just check the binding

    Returns:
        Outcome message (connected, already connected, or sign up first)
    """
    try:
        result = _run({"action": "connect", "user_id": user_id, **_identity_fields(platform, sender_id)})
        mark = "✓" if result.success else "✗"
        return f"{mark} {result.message}"
    except ReminderServiceError as e:
        return _format_error(e)
    except Exception as e:
        logger.error(f"connect_account failed: {e}", exc_info=True)
        return f"✗ Error connecting account: {str(e)}"


@mcp.tool()
def create_reminder(
    platform: str,
    sender_id: str,
    message_text: Optional[str] = None,
    title: Optional[str] = None,
    date: Optional[str] = None,
    time: Optional[str] = None,
    location: Optional[str] = None,
    timezone: Optional[str] = None
) -> str:
    """Create a reminder from natural language or an explicit date and time.

    Args:
        platform: "telegram" or "whatsapp"
        sender_id: Telegram chat id or WhatsApp phone number
        message_text: Free text, e.g. "remind me tomorrow at 3pm to call mom"
        title: What to remind about (required when date/time are given)
        date: YYYY-MM-DD in the user's timezone
        time: HH:MM (24h) in the user's timezone
        location: Optional location
        timezone: IANA timezone (default Asia/Kolkata)

    Returns:
        Success message with reminder ID, due time and remaining quota, or error message
    """
    payload = {
        "action": "create_reminder",
        "message_text": message_text,
        "title": title,
        "date": date,
        "time": time,
        "location": location,
        **_identity_fields(platform, sender_id),
    }
    if timezone:
        payload["timezone"] = timezone
    try:
        result = _run(payload)
        remaining = "unlimited" if result.remaining == quota.UNLIMITED else result.remaining
        return (
            f"✓ {result.message}\n"
            f"ID: {result.reminder.id}\n"
            f"Due (UTC): {result.reminder.reminder_time.isoformat()}\n"
            f"Remaining this month: {remaining}"
        )
    except ReminderServiceError as e:
        return _format_error(e)
    except Exception as e:
        logger.error(f"create_reminder failed: {e}", exc_info=True)
        return f"✗ Error creating reminder: {str(e)}"


@mcp.tool()
def list_reminders(platform: str, sender_id: str) -> str:
    """List a user's upcoming reminders, soonest first.

    Args:
        platform: "telegram" or "whatsapp"
        sender_id: Telegram chat id or WhatsApp phone number
    """
    try:
        result = _run({"action": "list_reminders", **_identity_fields(platform, sender_id)})
        if not result.reminders:
            return "✓ No upcoming reminders"
        lines = [f"✓ {result.message}"]
        for r in result.reminders:
            lines.append(f"- [{r.id}] {r.message} (due {r.reminder_time.isoformat()})")
        return "\n".join(lines)
    except ReminderServiceError as e:
        return _format_error(e)
    except Exception as e:
        logger.error(f"list_reminders failed: {e}", exc_info=True)
        return f"✗ Error listing reminders: {str(e)}"


@mcp.tool()
def cancel_reminder(platform: str, sender_id: str, reminder_id: str) -> str:
    """Cancel one of the user's reminders.

    Args:
        platform: "telegram" or "whatsapp"
        sender_id: Telegram chat id or WhatsApp phone number
        reminder_id: Reminder UUID
    """
    try:
        result = _run({
            "action": "cancel_reminder",
            "reminder_id": reminder_id,
            **_identity_fields(platform, sender_id),
        })
        return f"✓ {result.message}"
    except ReminderServiceError as e:
        return _format_error(e)
    except Exception as e:
        logger.error(f"cancel_reminder failed: {e}", exc_info=True)
        return f"✗ Error cancelling reminder: {str(e)}"


@mcp.tool()
def check_usage(user_id: str) -> str:
    """Show a user's subscription tier and remaining quota.

    Args:
        user_id: Account id
    """
    db = database.SessionLocal()
    try:
        user = get_user(db, user_id)
        if user is None:
            return "✗ User not found"
        tier = user.subscription_tier.value
        reminders = quota.check_reminder_limit(db, user_id)
        api_calls = quota.check_api_limit(db, user_id)

        def describe(status):
            if status.limit == quota.UNLIMITED:
                return "unlimited"
            used = status.limit - status.remaining - (1 if status.allowed else 0)
            return f"{used}/{status.limit} used"

        return (
            f"✓ Tier: {tier}\n"
            f"Reminders this month: {describe(reminders)}\n"
            f"API calls today: {describe(api_calls)}"
        )
    except Exception as e:
        logger.error(f"check_usage failed: {e}", exc_info=True)
        return f"✗ Error checking usage: {str(e)}"
    finally:
        db.close()


if __name__ == "__main__":
    # Get transport from environment or config
    transport = os.getenv("MCP_TRANSPORT", settings.MCP_TRANSPORT).lower()

    if transport == "sse":
        host = settings.MCP_HOST
        port = settings.MCP_PORT

        print(f"Starting MCP server with SSE transport on {host}:{port}")
        print(f"SSE endpoint: http://{host}:{port}/sse")

        mcp.run(transport="sse")
    else:
        print("Starting MCP server with stdio transport")
        mcp.run(transport="stdio")
