"""User status and self-service quota reset."""

import logging

from fastapi import APIRouter, Depends

from personachat.core.auth import get_current_user_id
from personachat.features.billing.service import days_remaining, resolve_user_entitlement
from personachat.features.entitlements.service import limits_snapshot
from personachat.features.usage.service import message_stats, reset_daily_count
from personachat.features.users.service import touch_last_login
from personachat.models.billing import utc_now

logger = logging.getLogger("personachat")

router = APIRouter(tags=["users"])


@router.get("/user/status")
def user_status(user_id: str = Depends(get_current_user_id)):
    """Entitlement snapshot for the signed-in user."""
    now = utc_now()
    user, subscription, entitlement = resolve_user_entitlement(user_id, now=now)
    touch_last_login(user_id, now)

    subscription_payload = None
    if subscription is not None:
        subscription_payload = subscription.public_dict()
        subscription_payload["daysRemaining"] = days_remaining(subscription, now)

    return {
        "success": True,
        "user": {
            "uid": user.uid,
            "email": user.email,
            "displayName": user.display_name,
            "photoURL": user.photo_url,
            "plan": entitlement.plan.value,
            "subscriptionStatus": entitlement.subscription_status.value,
            "subscriptionExpired": entitlement.subscription_expired,
            "features": dict(entitlement.features),
            "limits": limits_snapshot(entitlement, user, now),
            "subscription": subscription_payload,
            "preferences": user.effective_preferences,
            "stats": message_stats(user, now),
        },
    }


@router.post("/reset-daily")
def reset_daily(user_id: str = Depends(get_current_user_id)):
    reset_daily_count(user_id)
    return {"success": True, "message": "Daily count reset successfully"}
