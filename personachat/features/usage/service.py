"""
personachat/features/usage/service.py

Daily message quota tracking.

Handles:
- Day rollover (UTC calendar date comparison, not a rolling 24h window)
- Would-succeed quota checks before calling a provider
- Consuming one message after a successful provider reply
- Per-user and sweep resets of the daily counter
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, update

from personachat.core.database import get_db_session, users
from personachat.core.errors import NotFoundError, QuotaExceededError
from personachat.features.users.service import record_activity
from personachat.models.billing import as_utc
from personachat.models.user import User


logger = logging.getLogger(__name__)


def quota_exceeded_message(limit: int) -> str:
    return f"Daily message limit ({limit}) reached. Upgrade to Pro for unlimited messages."


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    remaining: int  # -1 = unlimited
    current_count: int


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def should_reset(last_message_date: Optional[datetime], now: Optional[Any] = None) -> bool:
    """True when the stored counter belongs to an earlier UTC day (or never ran)."""
    if last_message_date is None:
        return True
    return as_utc(last_message_date).date() != _normalize_now(now).date()


def effective_daily_count(user: User, now: Optional[Any] = None) -> int:
    if should_reset(user.last_message_date, now):
        return 0
    return user.daily_message_count


def check_quota(user: User, daily_limit: int, now: Optional[Any] = None) -> QuotaCheck:
    """Would one more message succeed? Never writes."""
    count = effective_daily_count(user, now)
    if daily_limit < 0:
        return QuotaCheck(allowed=True, remaining=-1, current_count=count)
    return QuotaCheck(
        allowed=count < daily_limit,
        remaining=max(0, daily_limit - count),
        current_count=count,
    )


def consume(uid: str, daily_limit: int, now: Optional[Any] = None) -> QuotaCheck:
    """Count one message against today's quota.

    Raises:
        NotFoundError: unknown uid
        QuotaExceededError: a limited user already reached ``daily_limit``
    """
    normalized_now = _normalize_now(now)
    with get_db_session() as session:
        row = session.execute(
            select(users).where(users.c.uid == uid).with_for_update()
        ).first()
        if not row:
            raise NotFoundError(f"User {uid} not found")
        user = User.from_row(row)

        count = effective_daily_count(user, normalized_now)
        if daily_limit >= 0 and count >= daily_limit:
            logger.info(
                "[quota] daily limit reached",
                extra={"user_id": uid, "count": count, "limit": daily_limit},
            )
            raise QuotaExceededError(quota_exceeded_message(daily_limit))

        new_count = count + 1
        session.execute(
            update(users)
            .where(users.c.uid == uid)
            .values(
                daily_message_count=new_count,
                message_count=user.message_count + 1,
                last_message_date=normalized_now,
                updated_at=normalized_now,
            )
        )

    remaining = -1 if daily_limit < 0 else max(0, daily_limit - new_count)
    return QuotaCheck(allowed=True, remaining=remaining, current_count=new_count)


def reset_daily_count(uid: str, now: Optional[Any] = None) -> None:
    """Zero one user's counter (explicit user-initiated reset)."""
    normalized_now = _normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(users)
            .where(users.c.uid == uid)
            .values(daily_message_count=0, last_message_date=normalized_now, updated_at=normalized_now)
        )
        if not result.rowcount:
            raise NotFoundError(f"User {uid} not found")
        record_activity(session, uid, "daily_count_reset", {"source": "user"}, now=normalized_now)
    logger.info("[quota] daily count reset", extra={"user_id": uid})


def reset_stale_daily_counts(now: Optional[Any] = None) -> List[Dict[str, Any]]:
    """Sweep: zero every non-zero counter whose last message is not from today.

    ``last_message_date`` is left alone so it keeps meaning "last message".
    Running it twice resets nothing the second time.
    """
    normalized_now = _normalize_now(now)
    resets: List[Dict[str, Any]] = []
    with get_db_session() as session:
        rows = session.execute(
            select(users.c.uid, users.c.daily_message_count, users.c.last_message_date)
            .where(users.c.daily_message_count > 0)
        ).fetchall()
        for row in rows:
            if not should_reset(row.last_message_date, normalized_now):
                continue
            session.execute(
                update(users).where(users.c.uid == row.uid).values(daily_message_count=0)
            )
            last = as_utc(row.last_message_date)
            resets.append({
                "uid": row.uid,
                "previousCount": row.daily_message_count,
                "lastMessageDate": last.isoformat() if last else None,
            })
    if resets:
        logger.info("[quota] reset stale daily counts", extra={"count": len(resets)})
    return resets


def message_stats(user: User, now: Optional[Any] = None) -> Dict[str, Any]:
    return {
        "totalMessages": user.message_count,
        "dailyMessages": effective_daily_count(user, now),
        "lastMessageDate": user.last_message_date.isoformat() if user.last_message_date else None,
        "memberSince": user.created_at.isoformat() if user.created_at else None,
    }
