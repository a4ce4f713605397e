"""CRUD operations for the Reminder Bot backend.

This module provides database operations for reminders: creation against the
monthly quota, the chat and dashboard listings, cancellation, status updates
from the dispatcher, and the due-reminder poll.
IMPORTANT: All datetime parameters and return values are aware UTC datetime objects, NOT strings.

Status transitions follow ALLOWED_TRANSITIONS; re-applying the current status
is a no-op and anything else raises InvalidTransitionError.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from config import settings
from database import PlatformEnum, Reminder, StatusEnum, SubscriptionTier, User, as_utc, utcnow
from errors import InvalidRequestError, InvalidTransitionError, NotFoundError
from logger_config import setup_logger
import quota
from schemas import QuotaStatus

logger = setup_logger(__name__, 'crud.log')

ALLOWED_TRANSITIONS: Dict[StatusEnum, frozenset] = {
    StatusEnum.PENDING: frozenset({StatusEnum.SENT, StatusEnum.FAILED, StatusEnum.CANCELLED}),
    # Dispatcher retries may move a failed reminder forward again
    StatusEnum.FAILED: frozenset({StatusEnum.SENT, StatusEnum.FAILED, StatusEnum.CANCELLED}),
    StatusEnum.SENT: frozenset(),
    StatusEnum.CANCELLED: frozenset(),
}


def create_reminder(
    db: Session,
    user_id: str,
    message: str,
    reminder_time: datetime,
    platform: Union[PlatformEnum, str],
    location: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Reminder, QuotaStatus]:
    """Create a pending reminder, consuming one unit of the monthly quota.

    The quota reservation and the insert commit together; a reminder is never
    created past the limit.

    Args:
        db: Database session
        user_id: Owner
        message: What to remind about
        reminder_time: When it is due (MUST be datetime object; naive is taken as UTC)
        platform: Delivery platform
        location: Optional location
        now: Clock override, for quota period reckoning

    Returns:
        Tuple of the created reminder and the quota status after reservation

    Raises:
        QuotaExceededError: the user is at the monthly limit
        NotFoundError: no such user
    """
    message = (message or "").strip()
    if not message:
        raise InvalidRequestError("Reminder message is required")

    status = quota.reserve_reminder(db, user_id, now=now)
    db_reminder = Reminder(
        user_id=user_id,
        message=message,
        reminder_time=as_utc(reminder_time),
        platform=PlatformEnum(platform),
        status=StatusEnum.PENDING,
        location=location or None,
    )
    db.add(db_reminder)
    db.commit()
    db.refresh(db_reminder)
    logger.info(f"Created reminder {db_reminder.id} for user {user_id} due {db_reminder.reminder_time.isoformat()}")
    return db_reminder, status


def list_pending_reminders(db: Session, user_id: str, limit: Optional[int] = None) -> List[Reminder]:
    """Pending reminders for the chat listing, soonest first.

    Args:
        db: Database session
        user_id: Owner
        limit: Page size (default: PENDING_PAGE_SIZE)
    """
    return list(db.scalars(
        select(Reminder)
        .where(Reminder.user_id == user_id, Reminder.status == StatusEnum.PENDING)
        .order_by(Reminder.reminder_time.asc())
        .limit(limit or settings.PENDING_PAGE_SIZE)
    ))


def list_reminders(db: Session, user_id: str) -> List[Reminder]:
    """All of a user's reminders for the dashboard, newest first."""
    return list(db.scalars(
        select(Reminder)
        .where(Reminder.user_id == user_id)
        .order_by(Reminder.created_at.desc())
    ))


def get_reminder(db: Session, reminder_id: str, user_id: Optional[str] = None) -> Optional[Reminder]:
    """Get a reminder by ID, optionally scoped to its owner.

    Returns:
        Optional[Reminder]: Reminder object if found, None otherwise
    """
    stmt = select(Reminder).where(Reminder.id == reminder_id)
    if user_id is not None:
        stmt = stmt.where(Reminder.user_id == user_id)
    return db.scalar(stmt)


def _current_status(db: Session, reminder_id: str, user_id: Optional[str] = None) -> Optional[StatusEnum]:
    """Status as stored right now, bypassing any copy already in the session."""
    stmt = select(Reminder.status).where(Reminder.id == reminder_id)
    if user_id is not None:
        stmt = stmt.where(Reminder.user_id == user_id)
    status = db.scalar(stmt)
    return StatusEnum(status) if status is not None else None


def _transition(db: Session, reminder_id: str, status: StatusEnum, now: datetime,
                user_id: Optional[str] = None) -> Reminder:
    """Move a reminder to status with a conditional UPDATE and commit.

    The row only changes if its stored status still allows the move, so a
    concurrent cancel is never overwritten. Re-applying the current status is
    a no-op.

    Raises:
        NotFoundError: no such reminder (or not owned by user_id)
        InvalidTransitionError: the stored status does not allow the change
    """
    current = _current_status(db, reminder_id, user_id)
    if current is None:
        raise NotFoundError("Reminder not found")

    if current != status:
        if status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, status.value)
        allowed_from = [s for s, targets in ALLOWED_TRANSITIONS.items() if status in targets]
        result = db.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.status.in_(allowed_from))
            .values(status=status, sent_at=now if status == StatusEnum.SENT else None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 0:
            # Changed underneath us between the read and the update
            current = _current_status(db, reminder_id) or current
            if current != status:
                raise InvalidTransitionError(current.value, status.value)
        else:
            logger.info(f"Reminder {reminder_id} marked {status.value}")

    reminder = db.scalar(
        select(Reminder).where(Reminder.id == reminder_id).execution_options(populate_existing=True)
    )
    return reminder


def cancel_reminder(db: Session, reminder_id: str, user_id: Optional[str] = None) -> Reminder:
    """Cancel a reminder.

    Raises:
        NotFoundError: no such reminder (or not owned by user_id)
        InvalidTransitionError: the reminder was already sent
    """
    return _transition(db, reminder_id, StatusEnum.CANCELLED, utcnow(), user_id=user_id)


def delete_reminder(db: Session, reminder_id: str, user_id: str) -> bool:
    """Hard-delete a reminder owned by user_id.

    Another user's reminder is left untouched.

    Returns:
        bool: True if a row was deleted
    """
    result = db.execute(
        delete(Reminder).where(Reminder.id == reminder_id, Reminder.user_id == user_id)
    )
    db.commit()
    deleted = result.rowcount > 0
    if deleted:
        logger.info(f"Deleted reminder {reminder_id} for user {user_id}")
    return deleted


def mark_status(db: Session, reminder_id: str, status: Union[StatusEnum, str] = StatusEnum.SENT,
                now: Optional[datetime] = None) -> Reminder:
    """Record a delivery outcome reported by the dispatcher.

    sent_at is set to now when status is sent and cleared otherwise.

    Raises:
        NotFoundError: no such reminder
        InvalidTransitionError: the change is not allowed from the current status
    """
    try:
        status = StatusEnum(status)
    except ValueError:
        raise InvalidRequestError(f"Unknown status '{status}'")

    return _transition(db, reminder_id, status, now or utcnow())


def fetch_due_reminders(db: Session, now: Optional[datetime] = None,
                        limit: Optional[int] = None) -> List[Tuple[Reminder, User]]:
    """Pending reminders whose time has come, soonest first, with their owners.

    Args:
        db: Database session
        now: Cutoff (default: current UTC time)
        limit: Batch size (default: DUE_BATCH_SIZE)

    Returns:
        List of (reminder, user) pairs
    """
    now = as_utc(now or utcnow())
    rows = db.execute(
        select(Reminder, User)
        .join(User, Reminder.user_id == User.id)
        .where(Reminder.status == StatusEnum.PENDING, Reminder.reminder_time <= now)
        .order_by(Reminder.reminder_time.asc())
        .limit(limit or settings.DUE_BATCH_SIZE)
    )
    return [(reminder, user) for reminder, user in rows]


def get_stats(db: Session, now: Optional[datetime] = None) -> dict:
    """Aggregate counts for the admin dashboard."""
    now = as_utc(now or utcnow())
    day_start = quota.start_of_day(now)
    day_end = day_start + timedelta(days=1)

    def count(stmt) -> int:
        return db.scalar(stmt) or 0

    users_by_tier = {tier.value: 0 for tier in SubscriptionTier}
    for tier, n in db.execute(select(User.subscription_tier, func.count()).group_by(User.subscription_tier)):
        users_by_tier[SubscriptionTier(tier).value] = n

    reminders_by_status = {status.value: 0 for status in StatusEnum}
    for status, n in db.execute(select(Reminder.status, func.count()).group_by(Reminder.status)):
        reminders_by_status[StatusEnum(status).value] = n

    recent_reminders = db.scalars(select(Reminder).order_by(Reminder.created_at.desc()).limit(10))
    recent_users = db.scalars(select(User).order_by(User.created_at.desc()).limit(10))

    return {
        "users": {
            "total": count(select(func.count()).select_from(User)),
            "whatsapp_connected": count(select(func.count()).select_from(User).where(User.whatsapp_connected.is_(True))),
            "telegram_connected": count(select(func.count()).select_from(User).where(User.telegram_connected.is_(True))),
            "by_tier": users_by_tier,
        },
        "reminders": {
            "total": sum(reminders_by_status.values()),
            "by_status": reminders_by_status,
            "created_today": count(
                select(func.count()).select_from(Reminder)
                .where(Reminder.created_at >= day_start, Reminder.created_at < day_end)
            ),
            "sent_today": count(
                select(func.count()).select_from(Reminder)
                .where(Reminder.sent_at >= day_start, Reminder.sent_at < day_end)
            ),
        },
        "recent_reminders": [
            {
                "id": r.id,
                "user_id": r.user_id,
                "message": r.message,
                "platform": r.platform.value,
                "status": r.status.value,
                "reminder_time": r.reminder_time,
                "created_at": r.created_at,
            }
            for r in recent_reminders
        ],
        "recent_users": [
            {
                "id": u.id,
                "email": u.email,
                "subscription_tier": u.subscription_tier.value,
                "whatsapp_connected": u.whatsapp_connected,
                "telegram_connected": u.telegram_connected,
                "created_at": u.created_at,
            }
            for u in recent_users
        ],
    }
