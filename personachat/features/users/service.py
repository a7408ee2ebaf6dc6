"""
User domain service.
- get_or_create_user(uid)
- get_user(uid)
- record_activity(session, uid, action, ...)
- touch_last_login(uid)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from personachat.core.database import (
    get_db_session,
    users,
    user_activities,
)
from personachat.features.plans.service import free_features
from personachat.models.plan import Plan, SubscriptionStatus
from personachat.models.user import DEFAULT_PREFERENCES, User


logger = logging.getLogger(__name__)


def new_user_values(uid: str, now: datetime, *, email: Optional[str] = None, display_name: Optional[str] = None, photo_url: Optional[str] = None) -> Dict[str, Any]:
    """Column values for a brand-new free user."""
    return {
        "uid": uid,
        "email": email,
        "display_name": display_name,
        "photo_url": photo_url,
        "plan": Plan.FREE.value,
        "subscription_status": SubscriptionStatus.INACTIVE.value,
        "features": free_features(),
        "message_count": 0,
        "daily_message_count": 0,
        "last_message_date": None,
        "preferences": dict(DEFAULT_PREFERENCES),
        "created_at": now,
        "last_login_at": now,
        "updated_at": now,
    }


def get_user(uid: str, *, session=None) -> Optional[User]:
    if session is not None:
        row = session.execute(select(users).where(users.c.uid == uid)).first()
        return User.from_row(row) if row else None
    with get_db_session() as own_session:
        return get_user(uid, session=own_session)


def ensure_user(session, uid: str, now: datetime, **profile) -> User:
    """Fetch or insert ``uid`` inside an existing transaction."""
    existing = get_user(uid, session=session)
    if existing:
        return existing
    values = new_user_values(uid, now, **profile)
    session.execute(insert(users).values(**values))
    logger.info("[users] created user", extra={"user_id": uid})
    return User.model_validate(values)


def get_or_create_user(
    uid: str,
    *,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    photo_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> User:
    existing = get_user(uid)
    if existing:
        return existing

    created_at = now or datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            return ensure_user(session, uid, created_at, email=email, display_name=display_name, photo_url=photo_url)
    except IntegrityError:
        # Concurrent first request for the same uid
        existing = get_user(uid)
        if existing is None:
            raise
        return existing


def touch_last_login(uid: str, now: Optional[datetime] = None) -> None:
    stamp = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(update(users).where(users.c.uid == uid).values(last_login_at=stamp))


def record_activity(
    session,
    uid: str,
    action: str,
    details: Optional[Dict[str, Any]] = None,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Append an audit row; runs inside the caller's transaction."""
    session.execute(
        insert(user_activities).values(
            uid=uid,
            action=action,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now or datetime.now(timezone.utc),
        )
    )
