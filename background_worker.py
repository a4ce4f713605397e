"""Reference dispatcher for the Reminder Bot backend.

This module implements a background worker that polls for due reminders and
delivers them over the user's chat platform:
- Telegram through the Bot API sendMessage call
- WhatsApp through an HTTP gateway (POST {WHATSAPP_API_URL}/messages)

The worker:
- Runs continuously, fetching due reminders every WORKER_CHECK_INTERVAL seconds
- Retries each delivery up to WORKER_MAX_RETRIES times with exponential backoff
- Reports the outcome back through mark_status (sent / failed)
"""

import asyncio
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

import httpx

import crud
import database
from config import settings
from database import PlatformEnum, Reminder, StatusEnum, User
from errors import ReminderServiceError
from logger_config import setup_logger

# Configure logging
logger = setup_logger(__name__, 'worker.log')

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


@dataclass
class OutboundMessage:
    url: str
    payload: Dict[str, str]
    headers: Dict[str, str] = field(default_factory=dict)


def format_reminder_text(reminder: Reminder, user: User) -> str:
    text = f"⏰ Reminder from {user.bot_name}: {reminder.message}"
    if reminder.location:
        text += f"\n📍 {reminder.location}"
    return text


def build_outbound_message(reminder: Reminder, user: User) -> Optional[OutboundMessage]:
    """Platform request for one reminder, or None if it cannot be delivered."""
    text = format_reminder_text(reminder, user)

    if reminder.platform == PlatformEnum.TELEGRAM:
        if not settings.TELEGRAM_BOT_TOKEN or not user.telegram_chat_id:
            return None
        return OutboundMessage(
            url=f"{settings.TELEGRAM_API_URL}/bot{settings.TELEGRAM_BOT_TOKEN}/sendMessage",
            payload={"chat_id": user.telegram_chat_id, "text": text},
        )

    if not settings.WHATSAPP_API_URL or not user.whatsapp_phone:
        return None
    headers = {}
    if settings.WHATSAPP_API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.WHATSAPP_API_TOKEN}"
    return OutboundMessage(
        url=f"{settings.WHATSAPP_API_URL.rstrip('/')}/messages",
        payload={"to": user.whatsapp_phone, "text": text},
        headers=headers,
    )


async def send_message(client: httpx.AsyncClient, outbound: OutboundMessage, reminder_id: str) -> bool:
    """POST one message. Returns True on a 2xx response."""
    try:
        response = await client.post(outbound.url, json=outbound.payload, headers=outbound.headers)
    except httpx.TimeoutException:
        logger.error(f"Timeout while delivering reminder {reminder_id}")
        return False
    except httpx.RequestError as e:
        logger.error(f"Network error while delivering reminder {reminder_id}: {str(e)}")
        return False

    if response.is_success:
        logger.info(f"Delivered reminder {reminder_id}")
        return True
    logger.error(
        f"Failed to deliver reminder {reminder_id}. "
        f"Status: {response.status_code}, Response: {response.text}"
    )
    return False


async def deliver_with_retries(client: httpx.AsyncClient, outbound: OutboundMessage, reminder_id: str,
                               max_retries: int,
                               sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> bool:
    for attempt in range(1, max_retries + 1):
        logger.info(f"Attempt {attempt}/{max_retries} for reminder {reminder_id}")
        if await send_message(client, outbound, reminder_id):
            return True
        if attempt < max_retries:
            # Exponential backoff: 2s, 4s, 8s...
            delay = 2 ** attempt
            logger.info(f"Waiting {delay}s before next retry...")
            await sleep(delay)
    return False


def _report(db, reminder_id: str, status: StatusEnum) -> bool:
    try:
        crud.mark_status(db, reminder_id, status)
    except ReminderServiceError as e:
        # e.g. cancelled by the user while we were delivering
        logger.warning(f"Could not mark reminder {reminder_id} {status.value}: {e.message}")
        return False
    return True


async def process_due_reminders(client: Optional[httpx.AsyncClient] = None,
                                now: Optional[datetime] = None,
                                sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> Dict[str, int]:
    """Deliver every due reminder once and record the outcome.

    Returns:
        Counts of sent and failed reminders
    """
    counts = {"sent": 0, "failed": 0}
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=30.0)

    db = database.SessionLocal()
    try:
        due = crud.fetch_due_reminders(db, now=now)
        if not due:
            logger.debug("No due reminders at this time")
            return counts

        logger.info(f"Found {len(due)} due reminder(s)")
        for reminder, user in due:
            outbound = build_outbound_message(reminder, user)
            if outbound is None:
                logger.error(
                    f"Reminder {reminder.id} has no deliverable {reminder.platform.value} contact "
                    f"or the platform is not configured"
                )
                delivered = False
            else:
                delivered = await deliver_with_retries(
                    client, outbound, reminder.id, settings.WORKER_MAX_RETRIES, sleep=sleep
                )

            if delivered:
                if _report(db, reminder.id, StatusEnum.SENT):
                    counts["sent"] += 1
            else:
                logger.error(f"All delivery attempts failed for reminder {reminder.id}")
                if _report(db, reminder.id, StatusEnum.FAILED):
                    counts["failed"] += 1
    finally:
        db.close()
        if owns_client:
            await client.aclose()
    return counts


async def worker_loop():
    """Main worker loop that runs continuously.

    Checks for due reminders at the configured interval and delivers them.
    """
    logger.info("Dispatcher started")
    logger.info(f"Worker enabled: {settings.WORKER_ENABLED}")
    logger.info(f"Check interval: {settings.WORKER_CHECK_INTERVAL} seconds")

    if not settings.WORKER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    iteration = 0
    async with httpx.AsyncClient(timeout=30.0) as client:
        while not shutdown_requested:
            try:
                iteration += 1
                logger.debug(f"Worker iteration {iteration} started")
                counts = await process_due_reminders(client)
                if counts["sent"] or counts["failed"]:
                    logger.info(f"Iteration {iteration}: sent={counts['sent']} failed={counts['failed']}")

                # Break sleep into 1-second intervals to allow quick shutdown
                for _ in range(settings.WORKER_CHECK_INTERVAL):
                    if shutdown_requested:
                        break
                    await asyncio.sleep(1)

            except Exception as e:
                logger.error(f"Error in worker loop iteration {iteration}: {str(e)}", exc_info=True)
                # Continue running even if an error occurs
                await asyncio.sleep(5)

    logger.info("Dispatcher shutting down gracefully")


def main():
    """Main entry point for the dispatcher."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Bot - Dispatcher")
    logger.info("=" * 60)

    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in dispatcher: {str(e)}", exc_info=True)
        sys.exit(1)

    logger.info("Dispatcher stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
