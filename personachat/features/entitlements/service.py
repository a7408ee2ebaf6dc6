"""
personachat/features/entitlements/service.py

Entitlement resolution.

Handles:
- Effective plan, daily limit and feature flags from {plan, subscription_status}
- Detection of active subscriptions that are past their end date
- Remaining-message helpers for status snapshots

Resolution never writes; a required downgrade is reported on the result and
applied by the billing service.
"""

from datetime import datetime, timezone
from typing import Any, Optional
import logging

from personachat.features.plans.service import (
    daily_limit_for,
    features_for_plan,
    free_features,
)
from personachat.features.usage.service import effective_daily_count
from personachat.models.billing import Subscription
from personachat.models.entitlement import Entitlement
from personachat.models.plan import PAID_PLANS, Plan, SubscriptionStatus
from personachat.models.user import User


logger = logging.getLogger(__name__)


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def resolve_entitlement(
    user: User,
    subscription: Optional[Subscription] = None,
    now: Optional[Any] = None,
) -> Entitlement:
    """Resolve what ``user`` may do right now.

    Args:
        user: Stored user record (its ``features`` snapshot is ignored)
        subscription: The user's newest active subscription, if any
        now: Override clock for tests

    Returns:
        Entitlement; ``downgrade_required`` is set when ``subscription`` is
        active but its end date has passed.
    """
    normalized_now = _normalize_now(now)

    if (
        subscription is not None
        and subscription.status is SubscriptionStatus.ACTIVE
        and subscription.is_past_end(normalized_now)
    ):
        logger.warning(
            "[entitlement] active subscription past end date",
            extra={
                "user_id": user.uid,
                "subscription_id": subscription.id,
                "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
            },
        )
        return Entitlement(
            plan=Plan.FREE,
            subscription_status=SubscriptionStatus.EXPIRED,
            daily_limit=daily_limit_for(Plan.FREE, SubscriptionStatus.EXPIRED),
            features=free_features(),
            subscription_expired=True,
            downgrade_required=True,
        )

    plan = user.plan
    status = user.subscription_status
    tier_effective = plan not in PAID_PLANS or status is SubscriptionStatus.ACTIVE

    return Entitlement(
        plan=plan,
        subscription_status=status,
        daily_limit=daily_limit_for(plan, status),
        features=features_for_plan(plan) if tier_effective else free_features(),
        subscription_expired=status is SubscriptionStatus.EXPIRED,
    )


def remaining_messages(entitlement: Entitlement, user: User, now: Optional[Any] = None) -> int:
    """Messages left today; -1 when unlimited."""
    if entitlement.is_unlimited:
        return -1
    used = effective_daily_count(user, _normalize_now(now))
    return max(0, entitlement.daily_limit - used)


def is_limit_reached(entitlement: Entitlement, user: User, now: Optional[Any] = None) -> bool:
    if entitlement.is_unlimited:
        return False
    return remaining_messages(entitlement, user, now) <= 0


def limits_snapshot(entitlement: Entitlement, user: User, now: Optional[Any] = None) -> dict:
    normalized_now = _normalize_now(now)
    unlimited = entitlement.is_unlimited
    remaining = remaining_messages(entitlement, user, normalized_now)
    return {
        "dailyMessages": effective_daily_count(user, normalized_now),
        "remainingMessages": "unlimited" if unlimited else remaining,
        "isLimitReached": is_limit_reached(entitlement, user, normalized_now),
        "planLimit": "unlimited" if unlimited else entitlement.daily_limit,
        "hasUnlimitedMessages": unlimited,
    }
