from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from personachat.core.database import get_db_session, user_activities, users
from personachat.core.errors import NotFoundError, QuotaExceededError
from personachat.features.usage.service import (
    check_quota,
    consume,
    reset_daily_count,
    reset_stale_daily_counts,
    should_reset,
)
from personachat.features.users.service import get_or_create_user, get_user

NOW = datetime(2024, 5, 1, 15, 30, tzinfo=timezone.utc)


def _set_counter(uid: str, count: int, last: datetime):
    with get_db_session() as session:
        session.execute(
            update(users).where(users.c.uid == uid).values(daily_message_count=count, last_message_date=last)
        )


def test_should_reset_uses_utc_calendar_day():
    assert should_reset(None, NOW)
    assert not should_reset(NOW.replace(hour=0, minute=0), NOW)
    assert should_reset(NOW - timedelta(days=1), NOW)
    # 23:59 UTC yesterday is a different day even though it is minutes away
    assert should_reset(datetime(2024, 5, 1, 23, 59, tzinfo=timezone.utc), datetime(2024, 5, 2, 0, 1, tzinfo=timezone.utc))
    # Naive timestamps are read as UTC
    assert not should_reset(datetime(2024, 5, 1, 1, 0), NOW)


def test_free_user_twenty_first_message_fails():
    get_or_create_user("u_free", now=NOW)
    for i in range(20):
        result = consume("u_free", 20, NOW)
        assert result.current_count == i + 1
    assert result.remaining == 0

    with pytest.raises(QuotaExceededError) as exc:
        consume("u_free", 20, NOW)
    assert exc.value.status_code == 403
    assert "Daily message limit (20) reached" in exc.value.message

    user = get_user("u_free")
    assert user.daily_message_count == 20
    assert user.message_count == 20


def test_unlimited_consume_never_fails():
    get_or_create_user("u_pro", now=NOW)
    for _ in range(30):
        result = consume("u_pro", -1, NOW)
    assert result.remaining == -1
    assert get_user("u_pro").daily_message_count == 30


def test_rollover_restarts_count_at_one():
    get_or_create_user("u_roll", now=NOW)
    _set_counter("u_roll", 20, NOW - timedelta(days=1))

    user = get_user("u_roll")
    assert check_quota(user, 20, NOW).allowed

    result = consume("u_roll", 20, NOW)
    assert result.current_count == 1
    assert get_user("u_roll").daily_message_count == 1


def test_check_quota_is_read_only():
    get_or_create_user("u_check", now=NOW)
    _set_counter("u_check", 20, NOW)
    user = get_user("u_check")
    check = check_quota(user, 20, NOW)
    assert not check.allowed
    assert check.remaining == 0
    assert get_user("u_check").daily_message_count == 20


def test_consume_unknown_user():
    with pytest.raises(NotFoundError):
        consume("ghost", 20, NOW)


def test_user_reset_zeroes_counter_and_logs_activity():
    get_or_create_user("u_reset", now=NOW)
    _set_counter("u_reset", 12, NOW)

    reset_daily_count("u_reset", NOW)

    assert get_user("u_reset").daily_message_count == 0
    with get_db_session() as session:
        actions = session.execute(
            select(user_activities.c.action).where(user_activities.c.uid == "u_reset")
        ).scalars().all()
    assert "daily_count_reset" in actions


def test_user_reset_unknown_user():
    with pytest.raises(NotFoundError):
        reset_daily_count("ghost", NOW)


def test_sweep_resets_only_stale_counters_and_is_idempotent():
    for uid in ("stale", "fresh", "zero"):
        get_or_create_user(uid, now=NOW)
    yesterday = NOW - timedelta(days=1)
    _set_counter("stale", 9, yesterday)
    _set_counter("fresh", 4, NOW)

    resets = reset_stale_daily_counts(NOW)

    assert [r["uid"] for r in resets] == ["stale"]
    assert resets[0]["previousCount"] == 9
    stale = get_user("stale")
    assert stale.daily_message_count == 0
    assert stale.last_message_date.date() == yesterday.date()
    assert get_user("fresh").daily_message_count == 4

    assert reset_stale_daily_counts(NOW) == []
