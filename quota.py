"""Quota tracking for the Reminder Bot backend.

Per-user rolling counters: reminders per month and API calls per day, with
limits derived from the subscription tier. Counters roll over lazily: a check
that finds a counter from a previous period resets it in place.

Known limitation: check_* followed by increment_* is two statements, so two
concurrent requests can both pass the check. Reminder creation goes through
reserve_reminder instead, which resets and increments with a ceiling in
conditional UPDATEs and cannot overshoot the limit.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from config import settings
from database import SubscriptionTier, User, as_utc, utcnow
from errors import NotFoundError, QuotaExceededError
from logger_config import setup_logger
from schemas import QuotaStatus

logger = setup_logger(__name__, 'quota.log')

UNLIMITED = -1


@dataclass(frozen=True)
class TierLimits:
    reminders_per_month: int
    api_calls_per_day: int


TIER_LIMITS = {
    SubscriptionTier.FREE: TierLimits(reminders_per_month=5, api_calls_per_day=10),
    SubscriptionTier.PRO: TierLimits(reminders_per_month=UNLIMITED, api_calls_per_day=100),
    SubscriptionTier.ENTERPRISE: TierLimits(reminders_per_month=UNLIMITED, api_calls_per_day=UNLIMITED),
}


def get_tier_limits(tier: Union[SubscriptionTier, str, None]) -> TierLimits:
    """Limits for a tier; unknown or missing tiers get the free limits."""
    try:
        return TIER_LIMITS[SubscriptionTier(tier)]
    except ValueError:
        return TIER_LIMITS[SubscriptionTier.FREE]


# ---------------------------------------------------------------------------
# Periods, reckoned in the server-local timezone and returned in UTC
# ---------------------------------------------------------------------------

def _local(now: datetime) -> datetime:
    return as_utc(now).astimezone(ZoneInfo(settings.TIMEZONE))


def start_of_month(now: datetime) -> datetime:
    local = _local(now)
    return as_utc(datetime.combine(local.date().replace(day=1), time.min, tzinfo=local.tzinfo))


def start_of_next_month(now: datetime) -> datetime:
    local = _local(now)
    first = local.date().replace(day=1)
    if first.month == 12:
        following = first.replace(year=first.year + 1, month=1)
    else:
        following = first.replace(month=first.month + 1)
    return as_utc(datetime.combine(following, time.min, tzinfo=local.tzinfo))


def start_of_day(now: datetime) -> datetime:
    local = _local(now)
    return as_utc(datetime.combine(local.date(), time.min, tzinfo=local.tzinfo))


def start_of_next_day(now: datetime) -> datetime:
    local = _local(now)
    return as_utc(datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=local.tzinfo))


@dataclass(frozen=True)
class _Counter:
    """Which user columns and which period a counter uses."""

    name: str
    count_column: str
    reset_column: str
    limit_attr: str
    period_start: Callable[[datetime], datetime]
    next_period_start: Callable[[datetime], datetime]


REMINDERS = _Counter(
    "reminders", "reminders_count_this_month", "reminders_reset_at",
    "reminders_per_month", start_of_month, start_of_next_month,
)
API_CALLS = _Counter(
    "api_calls", "api_calls_today", "api_calls_reset_at",
    "api_calls_per_day", start_of_day, start_of_next_day,
)


def _reset_if_stale(db: Session, user_id: str, counter: _Counter, period_start: datetime) -> bool:
    """Zero the counter if it belongs to an earlier period. Returns True if it did."""
    reset_col = getattr(User, counter.reset_column)
    result = db.execute(
        update(User)
        .where(User.id == user_id, or_(reset_col.is_(None), reset_col < period_start))
        .values({counter.count_column: 0, counter.reset_column: period_start})
    )
    return result.rowcount > 0


def _check(db: Session, user_id: str, counter: _Counter, now: Optional[datetime]) -> QuotaStatus:
    now = now or utcnow()
    user = db.get(User, user_id)
    if user is None:
        logger.warning(f"Quota check for unknown user {user_id}")
        return QuotaStatus(allowed=False, remaining=0, limit=0, reset_at=now, error="User not found")

    limit = getattr(get_tier_limits(user.subscription_tier), counter.limit_attr)
    if limit == UNLIMITED:
        return QuotaStatus(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, reset_at=now)

    period_start = counter.period_start(now)
    reset_at = getattr(user, counter.reset_column)
    if reset_at is None or as_utc(reset_at) < period_start:
        if _reset_if_stale(db, user_id, counter, period_start):
            db.commit()
            logger.info(f"Rolled over {counter.name} counter for user {user_id}")
        return QuotaStatus(allowed=True, remaining=limit - 1, limit=limit, reset_at=period_start)

    remaining = limit - (getattr(user, counter.count_column) or 0)
    if remaining <= 0:
        return QuotaStatus(allowed=False, remaining=0, limit=limit, reset_at=counter.next_period_start(now))
    return QuotaStatus(allowed=True, remaining=remaining - 1, limit=limit, reset_at=period_start)


def _increment(db: Session, user_id: str, counter: _Counter) -> None:
    count_col = getattr(User, counter.count_column)
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values({counter.count_column: count_col + 1})
    )
    db.commit()


def _reserve(db: Session, user_id: str, counter: _Counter, now: Optional[datetime]) -> QuotaStatus:
    """Consume one unit, refusing at the ceiling. Does not commit."""
    now = now or utcnow()
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", action="connect_required")

    limit = getattr(get_tier_limits(user.subscription_tier), counter.limit_attr)
    period_start = counter.period_start(now)
    _reset_if_stale(db, user_id, counter, period_start)

    count_col = getattr(User, counter.count_column)
    stmt = update(User).where(User.id == user_id)
    if limit != UNLIMITED:
        stmt = stmt.where(count_col < limit)
    result = db.execute(stmt.values({counter.count_column: count_col + 1}))

    if result.rowcount == 0:
        db.rollback()
        used = db.scalar(select(count_col).where(User.id == user_id)) or 0
        logger.info(f"User {user_id} hit the {counter.name} limit ({used}/{limit})")
        raise QuotaExceededError(limit=limit, used=used, reset_at=counter.next_period_start(now))

    if limit == UNLIMITED:
        return QuotaStatus(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, reset_at=now)
    used = db.scalar(select(count_col).where(User.id == user_id))
    return QuotaStatus(allowed=True, remaining=limit - used, limit=limit, reset_at=period_start)


def check_reminder_limit(db: Session, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
    """Check the monthly reminder quota.

    May persist a rollover. When allowed, remaining already accounts for the
    reminder about to be created.
    """
    return _check(db, user_id, REMINDERS, now)


def increment_reminder_count(db: Session, user_id: str) -> None:
    _increment(db, user_id, REMINDERS)


def check_api_limit(db: Session, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
    """Check the daily API-call quota. Same shape and rollover as reminders."""
    return _check(db, user_id, API_CALLS, now)


def increment_api_count(db: Session, user_id: str) -> None:
    _increment(db, user_id, API_CALLS)


def reserve_reminder(db: Session, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
    """Atomically take one reminder from the monthly quota.

    Runs inside the caller's transaction so the reservation commits or rolls
    back together with the reminder row.

    Raises:
        QuotaExceededError: the user is at the limit for the current month
        NotFoundError: no such user
    """
    return _reserve(db, user_id, REMINDERS, now)


def reserve_api_call(db: Session, user_id: str, now: Optional[datetime] = None,
                     commit: bool = True) -> QuotaStatus:
    """Atomically take one call from the daily API quota.

    With commit=False the reservation stays in the caller's transaction, so a
    later failure in the same request rolls it back.
    """
    try:
        status = _reserve(db, user_id, API_CALLS, now)
    except QuotaExceededError as exc:
        raise QuotaExceededError(
            limit=exc.limit, used=exc.used, reset_at=exc.reset_at,
            message=f"You've used all {exc.limit} API calls for today. Upgrade for a higher limit!",
        )
    if commit:
        db.commit()
    return status
