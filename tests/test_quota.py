from datetime import datetime, timezone

import pytest

import quota
from database import SubscriptionTier
from errors import NotFoundError, QuotaExceededError
from identity import create_user, update_subscription_tier

UTC = timezone.utc
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
LAST_MONTH = datetime(2023, 12, 3, tzinfo=UTC)
THIS_MONTH = datetime(2024, 1, 1, tzinfo=UTC)


def _set_reminders(db, user, count, reset_at):
    user.reminders_count_this_month = count
    user.reminders_reset_at = reset_at
    db.commit()


@pytest.mark.parametrize("tier, expected_remaining, expected_limit", [
    (SubscriptionTier.FREE, 4, 5),
    (SubscriptionTier.PRO, -1, -1),
    (SubscriptionTier.ENTERPRISE, -1, -1),
])
def test_fresh_period_reports_limit_minus_one(db, tier, expected_remaining, expected_limit):
    user = create_user(db, f"{tier.value}@example.com", subscription_tier=tier)
    _set_reminders(db, user, 0, LAST_MONTH)

    status = quota.check_reminder_limit(db, user.id, now=NOW)

    assert status.allowed is True
    assert status.remaining == expected_remaining
    assert status.limit == expected_limit


@pytest.mark.parametrize("tier, expected_remaining", [
    (SubscriptionTier.FREE, 9),
    (SubscriptionTier.PRO, 99),
    (SubscriptionTier.ENTERPRISE, -1),
])
def test_api_limit_per_tier(db, tier, expected_remaining):
    user = create_user(db, f"api-{tier.value}@example.com", subscription_tier=tier)
    user.api_calls_reset_at = datetime(2024, 1, 14, tzinfo=UTC)
    db.commit()

    status = quota.check_api_limit(db, user.id, now=NOW)

    assert status.allowed is True
    assert status.remaining == expected_remaining


def test_rollover_resets_counter_before_evaluating(db, user):
    _set_reminders(db, user, 5, LAST_MONTH)

    status = quota.check_reminder_limit(db, user.id, now=NOW)

    assert status.allowed is True
    assert status.remaining == 4
    db.refresh(user)
    assert user.reminders_count_this_month == 0
    assert user.reminders_reset_at == THIS_MONTH


def test_exhausted_quota_is_denied_until_next_month(db, user):
    _set_reminders(db, user, 5, THIS_MONTH)

    status = quota.check_reminder_limit(db, user.id, now=NOW)

    assert status.allowed is False
    assert status.remaining == 0
    assert status.limit == 5
    assert status.reset_at == datetime(2024, 2, 1, tzinfo=UTC)


def test_remaining_accounts_for_the_next_reminder(db, user):
    _set_reminders(db, user, 2, THIS_MONTH)

    status = quota.check_reminder_limit(db, user.id, now=NOW)

    assert status.allowed is True
    assert status.remaining == 2


def test_unknown_user_is_not_allowed(db):
    status = quota.check_reminder_limit(db, "missing", now=NOW)

    assert status.allowed is False
    assert status.limit == 0
    assert status.error == "User not found"


def test_increment_reminder_count(db, user):
    _set_reminders(db, user, 2, THIS_MONTH)

    quota.increment_reminder_count(db, user.id)

    db.refresh(user)
    assert user.reminders_count_this_month == 3


def test_increment_api_count(db, user):
    quota.increment_api_count(db, user.id)
    quota.increment_api_count(db, user.id)

    db.refresh(user)
    assert user.api_calls_today == 2


def test_reserve_stops_at_the_limit(db, user):
    _set_reminders(db, user, 4, THIS_MONTH)

    status = quota.reserve_reminder(db, user.id, now=NOW)
    db.commit()
    assert status.remaining == 0

    with pytest.raises(QuotaExceededError) as exc_info:
        quota.reserve_reminder(db, user.id, now=NOW)

    assert exc_info.value.limit == 5
    assert exc_info.value.used == 5
    assert exc_info.value.reset_at == datetime(2024, 2, 1, tzinfo=UTC)
    db.refresh(user)
    assert user.reminders_count_this_month == 5


def test_reserve_rolls_over_a_stale_counter(db, user):
    _set_reminders(db, user, 5, LAST_MONTH)

    status = quota.reserve_reminder(db, user.id, now=NOW)
    db.commit()

    assert status.remaining == 4
    db.refresh(user)
    assert user.reminders_count_this_month == 1
    assert user.reminders_reset_at == THIS_MONTH


def test_reserve_for_unlimited_tier_still_counts(db, pro_user):
    _set_reminders(db, pro_user, 40, THIS_MONTH)

    status = quota.reserve_reminder(db, pro_user.id, now=NOW)
    db.commit()

    assert status.remaining == quota.UNLIMITED
    db.refresh(pro_user)
    assert pro_user.reminders_count_this_month == 41


def test_reserve_unknown_user(db):
    with pytest.raises(NotFoundError):
        quota.reserve_reminder(db, "missing", now=NOW)


def test_reserve_api_call_reports_api_limit(db, user):
    user.api_calls_today = 10
    user.api_calls_reset_at = datetime(2024, 1, 15, tzinfo=UTC)
    db.commit()

    with pytest.raises(QuotaExceededError) as exc_info:
        quota.reserve_api_call(db, user.id, now=NOW)

    assert "API calls" in exc_info.value.message
    assert exc_info.value.reset_at == datetime(2024, 1, 16, tzinfo=UTC)


def test_tier_upgrade_lifts_the_limit(db, user):
    _set_reminders(db, user, 5, THIS_MONTH)
    update_subscription_tier(db, user.id, "pro")

    status = quota.check_reminder_limit(db, user.id, now=NOW)

    assert status.allowed is True
    assert status.limit == quota.UNLIMITED


def test_unknown_tier_falls_back_to_free():
    assert quota.get_tier_limits("platinum") == quota.TIER_LIMITS[SubscriptionTier.FREE]
    assert quota.get_tier_limits(None) == quota.TIER_LIMITS[SubscriptionTier.FREE]


def test_periods_follow_the_configured_timezone(monkeypatch):
    monkeypatch.setattr(quota.settings, "TIMEZONE", "Asia/Kolkata")
    # 20:00 UTC is already the next day in India
    now = datetime(2024, 1, 31, 20, 0, tzinfo=UTC)

    assert quota.start_of_day(now) == datetime(2024, 1, 31, 18, 30, tzinfo=UTC)
    assert quota.start_of_month(now) == datetime(2024, 1, 31, 18, 30, tzinfo=UTC)
    assert quota.start_of_next_day(now) == datetime(2024, 2, 1, 18, 30, tzinfo=UTC)


def test_next_month_wraps_the_year():
    assert quota.start_of_next_month(datetime(2024, 12, 20, tzinfo=UTC)) == datetime(2025, 1, 1, tzinfo=UTC)
