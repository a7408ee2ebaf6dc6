"""
Payment API routes.

POST /payment/confirm: client-confirmed payment -> active subscription
POST /payment/webhook: signed provider callbacks (Stripe, PayPal, Razorpay)
"""
import logging
from typing import Optional, Union

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from personachat.core.errors import ValidationError
from personachat.features.billing.service import create_subscription
from personachat.features.billing.webhooks import process_webhook

logger = logging.getLogger("personachat")

router = APIRouter(prefix="/payment", tags=["payments"])


class PaymentConfirmRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uid: Optional[str] = None
    email: Optional[str] = None
    displayName: Optional[str] = None
    plan: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    currency: Optional[str] = "USD"
    paymentMethod: Optional[str] = None
    transactionId: Optional[str] = None
    paymentProviderId: Optional[str] = None


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/confirm")
def confirm_payment(body: PaymentConfirmRequest, request: Request):
    missing = [
        name
        for name, value in (
            ("uid", body.uid),
            ("plan", body.plan),
            ("amount", body.amount),
            ("paymentMethod", body.paymentMethod),
        )
        if value in (None, "")
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    receipt = create_subscription(
        body.uid,
        body.plan,
        body.amount,
        body.currency,
        body.paymentMethod,
        transaction_id=body.transactionId,
        payment_provider_id=body.paymentProviderId,
        email=body.email,
        display_name=body.displayName,
        request_meta={
            "ip_address": _client_ip(request),
            "user_agent": request.headers.get("user-agent"),
        },
    )
    return {
        "success": True,
        "message": "Payment confirmed and subscription activated",
        "duplicate": receipt.duplicate,
        "subscription": receipt.to_response(),
    }


@router.post("/webhook")
async def payment_webhook(request: Request):
    body = await request.body()
    result = process_webhook(request.headers, body, path=request.url.path)
    logger.info(
        "webhook.handled",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "provider": result.get("provider"),
            "processed": result.get("processed"),
        },
    )
    return result
