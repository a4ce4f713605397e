"""Reminder lifecycle tests.

IMPORTANT: all datetimes coming back from the database must be aware UTC datetime objects.
"""

from datetime import datetime, timedelta, timezone

import pytest

import crud
from database import PlatformEnum, StatusEnum
from errors import InvalidTransitionError, NotFoundError, QuotaExceededError

UTC = timezone.utc
DUE = datetime(2024, 1, 2, 9, 30, tzinfo=UTC)


def _create(db, user, message="call mom", when=DUE, platform=PlatformEnum.TELEGRAM):
    reminder, _ = crud.create_reminder(db, user.id, message, when, platform)
    return reminder


def test_create_reminder(db, user):
    reminder, status = crud.create_reminder(db, user.id, "call mom", DUE, "telegram", location="home")

    assert reminder.status == StatusEnum.PENDING
    assert reminder.platform == PlatformEnum.TELEGRAM
    assert reminder.location == "home"
    assert reminder.sent_at is None
    assert reminder.reminder_time == DUE
    assert isinstance(reminder.created_at, datetime)
    assert reminder.created_at.tzinfo is not None
    assert (status.remaining, status.limit) == (4, 5)
    db.refresh(user)
    assert user.reminders_count_this_month == 1


def test_naive_reminder_time_is_taken_as_utc(db, user):
    reminder = _create(db, user, when=datetime(2024, 1, 2, 9, 30))

    assert reminder.reminder_time == DUE


def test_create_is_refused_at_the_limit(db, user):
    for i in range(5):
        _create(db, user, message=f"task {i}")

    with pytest.raises(QuotaExceededError):
        _create(db, user, message="one too many")

    assert len(crud.list_reminders(db, user.id)) == 5


def test_list_pending_is_soonest_first_and_capped(db, pro_user):
    for i in range(12):
        _create(db, pro_user, message=f"task {i}", when=DUE + timedelta(hours=12 - i))
    cancelled = crud.list_pending_reminders(db, pro_user.id)[0]
    crud.cancel_reminder(db, cancelled.id)

    pending = crud.list_pending_reminders(db, pro_user.id)

    assert len(pending) == 10
    times = [r.reminder_time for r in pending]
    assert times == sorted(times)
    assert cancelled.id not in {r.id for r in pending}


def test_list_reminders_is_newest_first(db, user):
    first = _create(db, user, message="first")
    second = _create(db, user, message="second")
    first.created_at = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
    second.created_at = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    db.commit()

    assert [r.message for r in crud.list_reminders(db, user.id)] == ["second", "first"]


def test_fetch_due_then_mark_sent(db, user):
    reminder = _create(db, user)
    now = DUE + timedelta(minutes=1)

    due = crud.fetch_due_reminders(db, now=now)
    assert [r.id for r, _ in due] == [reminder.id]
    assert due[0][1].id == user.id

    updated = crud.mark_status(db, reminder.id, "sent", now=now)
    assert updated.status == StatusEnum.SENT
    assert updated.sent_at == now

    assert crud.fetch_due_reminders(db, now=now) == []


def test_fetch_due_skips_future_reminders(db, user):
    _create(db, user, when=DUE + timedelta(hours=1))

    assert crud.fetch_due_reminders(db, now=DUE) == []


def test_fetch_due_is_ordered_and_batched(db, pro_user):
    for i in range(5):
        _create(db, pro_user, message=f"task {i}", when=DUE - timedelta(minutes=i))

    due = crud.fetch_due_reminders(db, now=DUE, limit=3)

    assert [r.message for r, _ in due] == ["task 4", "task 3", "task 2"]


def test_failed_delivery_can_be_retried(db, user):
    reminder = _create(db, user)

    crud.mark_status(db, reminder.id, StatusEnum.FAILED)
    assert reminder.sent_at is None
    sent = crud.mark_status(db, reminder.id, StatusEnum.SENT)

    assert sent.status == StatusEnum.SENT
    assert sent.sent_at is not None


def test_sent_is_terminal(db, user):
    reminder = _create(db, user)
    crud.mark_status(db, reminder.id, StatusEnum.SENT)

    with pytest.raises(InvalidTransitionError):
        crud.mark_status(db, reminder.id, StatusEnum.PENDING)
    with pytest.raises(InvalidTransitionError):
        crud.cancel_reminder(db, reminder.id)


def test_reapplying_a_status_is_a_no_op(db, user):
    reminder = _create(db, user)
    sent = crud.mark_status(db, reminder.id, StatusEnum.SENT)
    sent_at = sent.sent_at

    again = crud.mark_status(db, reminder.id, StatusEnum.SENT)

    assert again.sent_at == sent_at


def test_cancelled_cannot_be_sent(db, user):
    reminder = _create(db, user)
    crud.cancel_reminder(db, reminder.id)

    with pytest.raises(InvalidTransitionError):
        crud.mark_status(db, reminder.id, StatusEnum.SENT)


def test_cancel_from_another_session_wins_over_stale_copy(db, session_factory, user):
    reminder = _create(db, user)
    [(loaded, _)] = crud.fetch_due_reminders(db, now=DUE)
    assert loaded.status == StatusEnum.PENDING

    other = session_factory()
    try:
        crud.cancel_reminder(other, reminder.id, user.id)
    finally:
        other.close()

    with pytest.raises(InvalidTransitionError):
        crud.mark_status(db, reminder.id, StatusEnum.SENT)
    assert crud.get_reminder(db, reminder.id).status == StatusEnum.CANCELLED


def test_mark_status_unknown_reminder(db):
    with pytest.raises(NotFoundError):
        crud.mark_status(db, "missing", StatusEnum.SENT)


def test_cancel_is_scoped_to_owner(db, user, other_user):
    reminder = _create(db, user)

    with pytest.raises(NotFoundError):
        crud.cancel_reminder(db, reminder.id, user_id=other_user.id)

    assert crud.cancel_reminder(db, reminder.id, user_id=user.id).status == StatusEnum.CANCELLED


def test_delete_by_another_user_leaves_the_row(db, user, other_user):
    reminder = _create(db, user)

    assert crud.delete_reminder(db, reminder.id, other_user.id) is False
    assert crud.get_reminder(db, reminder.id) is not None

    assert crud.delete_reminder(db, reminder.id, user.id) is True
    assert crud.get_reminder(db, reminder.id) is None


def test_stats(db, user, other_user):
    first = _create(db, user)
    _create(db, other_user, platform=PlatformEnum.WHATSAPP)
    crud.mark_status(db, first.id, StatusEnum.SENT)

    stats = crud.get_stats(db)

    assert stats["users"]["total"] == 2
    assert stats["users"]["by_tier"]["free"] == 2
    assert stats["reminders"]["total"] == 2
    assert stats["reminders"]["by_status"] == {"pending": 1, "sent": 1, "failed": 0, "cancelled": 0}
    assert stats["reminders"]["created_today"] == 2
    assert stats["reminders"]["sent_today"] == 1
    assert len(stats["recent_reminders"]) == 2
