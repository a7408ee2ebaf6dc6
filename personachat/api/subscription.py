"""
Subscription API routes.

- GET  /subscription: public plan catalogue
- POST /subscription: user actions (send_instructions, confirm_payment,
  request_activation, activate, cancel)
- POST /subscription/check-expiry: internal cron (x-api-key)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from personachat.core.auth import get_current_user_id, require_internal_api_key
from personachat.core.config import settings
from personachat.core.errors import ValidationError
from personachat.features.billing.service import (
    activate_subscription,
    cancel_subscription,
    confirm_manual_payment,
    create_pending_subscription,
    run_maintenance,
    send_payment_instructions,
)
from personachat.features.plans.service import get_pricing_info

logger = logging.getLogger("personachat")

router = APIRouter(tags=["subscription"])

MAINTENANCE_ACTIONS = ("check-expiry", "reset-daily", "full-check")


class SubscriptionActionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    action: Optional[str] = None
    plan: Optional[str] = Field(default=None, alias="planId")
    currency: Optional[str] = "USD"
    subscriptionId: Optional[str] = None
    activationToken: Optional[str] = None


class MaintenanceRequest(BaseModel):
    action: Optional[str] = None


def _plan_from(body: SubscriptionActionRequest) -> str:
    if not body.plan:
        raise ValidationError("planId is required")
    return body.plan


@router.get("/subscription")
def list_plans():
    return {"success": True, "plans": get_pricing_info()}


@router.post("/subscription")
def subscription_action(body: SubscriptionActionRequest, user_id: str = Depends(get_current_user_id)):
    action = (body.action or "").strip()

    if action == "send_instructions":
        instructions = send_payment_instructions(user_id, _plan_from(body), body.currency)
        return {"success": True, "message": "Payment instructions sent.", "instructions": instructions}

    if action == "confirm_payment":
        receipt = confirm_manual_payment(user_id, _plan_from(body), body.currency)
        return {"success": True, "message": "Payment confirmed and subscription updated.", **receipt.to_response()}

    if action == "request_activation":
        subscription, token = create_pending_subscription(user_id, _plan_from(body), currency=body.currency)
        payload = {
            "success": True,
            "message": "Activation instructions sent.",
            "subscriptionId": subscription.id,
            "status": subscription.status.value,
        }
        if not settings.is_production:
            # No mail transport outside production; hand the token back directly
            payload["activationToken"] = token
        return payload

    if action == "activate":
        if not body.subscriptionId or not body.activationToken:
            raise ValidationError("subscriptionId and activationToken are required")
        subscription = activate_subscription(user_id, body.subscriptionId, body.activationToken)
        return {"success": True, "message": "Subscription activated.", "subscription": subscription.public_dict()}

    if action == "cancel":
        subscription = cancel_subscription(user_id)
        return {"success": True, "message": "Subscription cancelled.", "subscription": subscription.public_dict()}

    raise ValidationError("Invalid action")


@router.post("/subscription/check-expiry", dependencies=[Depends(require_internal_api_key)])
def check_expiry(body: MaintenanceRequest, request: Request):
    action = (body.action or "").strip()
    if action not in MAINTENANCE_ACTIONS:
        raise ValidationError(f"Invalid action. Supported actions: {', '.join(MAINTENANCE_ACTIONS)}")

    result = run_maintenance(action)
    logger.info(
        "maintenance.run",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "action": action,
            "expired": result.get("expiredSubscriptions"),
            "reset": result.get("resetCount"),
        },
    )
    return {"success": True, **result}
