"""
Payment provider webhooks.

Verifies signatures and normalizes Stripe, PayPal and Razorpay payment
events into a single shape before handing them to the subscription service.

Verification:
- Stripe: ``stripe-signature`` header (``t=...,v1=...``), checked by the
  Stripe SDK against STRIPE_WEBHOOK_SECRET.
- Razorpay: ``x-razorpay-signature`` hex HMAC-SHA256 of the raw body.
- PayPal: ``paypal-transmission-sig`` hex HMAC-SHA256 of the raw body.

In production an unverified request is rejected before anything is
written. Elsewhere it is processed with a warning so sandbox payloads work.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe
from sqlalchemy import insert

from personachat.core.config import settings
from personachat.core.database import get_db_session, webhook_errors
from personachat.core.errors import SignatureInvalidError, ValidationError
from personachat.core.metrics import webhook_events_total
from personachat.features.billing.service import create_subscription


logger = logging.getLogger(__name__)

STRIPE_TOLERANCE_SECONDS = 300

SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "razorpay": "x-razorpay-signature",
    "paypal": "paypal-transmission-sig",
}


@dataclass
class WebhookPayment:
    """A captured payment extracted from a provider event."""
    provider: str
    event_type: str
    uid: str
    plan: str
    amount: float
    currency: str
    transaction_id: Optional[str]
    email: Optional[str] = None
    display_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


def detect_provider(headers: Mapping[str, str]) -> Optional[str]:
    explicit = _header(headers, "x-webhook-provider")
    if explicit:
        return explicit.strip().lower()
    for provider, header_name in SIGNATURE_HEADERS.items():
        if _header(headers, header_name):
            return provider
    return None


def compute_hmac_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(provided.encode(), compute_hmac_hex(secret, body).encode())


def verify_stripe_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            body.decode("utf-8"), signature, secret, tolerance=STRIPE_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        logger.info(f"[webhook] stripe signature rejected: {e}")
        return False
    except UnicodeDecodeError:
        return False
    return True


def verify_signature(provider: str, headers: Mapping[str, str], body: bytes) -> bool:
    signature = _header(headers, SIGNATURE_HEADERS[provider])
    if provider == "stripe":
        return verify_stripe_signature(body, signature, settings.STRIPE_WEBHOOK_SECRET)
    if provider == "razorpay":
        return verify_hmac_signature(body, signature, settings.RAZORPAY_WEBHOOK_SECRET)
    return verify_hmac_signature(body, signature, settings.PAYPAL_WEBHOOK_SECRET)


def _require_metadata(meta: Mapping[str, Any], provider: str) -> None:
    if not meta.get("uid") or not meta.get("plan"):
        raise ValidationError(f"Missing uid/plan metadata in {provider} payment")


def parse_stripe_event(payload: Dict[str, Any]) -> Optional[WebhookPayment]:
    event_type = payload.get("type")
    if event_type != "payment_intent.succeeded":
        return None
    intent = (payload.get("data") or {}).get("object") or {}
    meta = intent.get("metadata") or {}
    _require_metadata(meta, "stripe")
    return WebhookPayment(
        provider="stripe",
        event_type=event_type,
        uid=meta["uid"],
        plan=meta["plan"],
        amount=float(intent.get("amount") or 0) / 100,
        currency=str(intent.get("currency") or "usd").upper(),
        transaction_id=intent.get("id"),
        email=meta.get("email"),
        display_name=meta.get("displayName"),
        metadata=dict(meta),
    )


def parse_paypal_event(payload: Dict[str, Any]) -> Optional[WebhookPayment]:
    event_type = payload.get("event_type")
    if event_type != "PAYMENT.CAPTURE.COMPLETED":
        return None
    resource = payload.get("resource") or {}
    try:
        meta = json.loads(resource.get("custom_id") or "{}")
    except json.JSONDecodeError:
        raise ValidationError("Invalid custom_id in PayPal payment")
    if not isinstance(meta, dict):
        raise ValidationError("Invalid custom_id in PayPal payment")
    _require_metadata(meta, "paypal")
    amount = resource.get("amount") or {}
    return WebhookPayment(
        provider="paypal",
        event_type=event_type,
        uid=meta["uid"],
        plan=meta["plan"],
        amount=float(amount.get("value") or 0),
        currency=str(amount.get("currency_code") or "USD").upper(),
        transaction_id=resource.get("id"),
        email=meta.get("email"),
        display_name=meta.get("displayName"),
        metadata=meta,
    )


def parse_razorpay_event(payload: Dict[str, Any]) -> Optional[WebhookPayment]:
    event_type = payload.get("event")
    if event_type != "payment.captured":
        return None
    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    notes = entity.get("notes") or {}
    _require_metadata(notes, "razorpay")
    return WebhookPayment(
        provider="razorpay",
        event_type=event_type,
        uid=notes["uid"],
        plan=notes["plan"],
        amount=float(entity.get("amount") or 0) / 100,
        currency=str(entity.get("currency") or "INR").upper(),
        transaction_id=entity.get("id"),
        email=notes.get("email"),
        display_name=notes.get("displayName"),
        metadata=dict(notes),
    )


PARSERS = {
    "stripe": parse_stripe_event,
    "paypal": parse_paypal_event,
    "razorpay": parse_razorpay_event,
}


def record_webhook_error(provider: Optional[str], error: str, path: Optional[str] = None) -> None:
    """Persist a processing failure in its own transaction."""
    try:
        with get_db_session() as session:
            session.execute(
                insert(webhook_errors).values(
                    provider=provider,
                    error=error[:2000],
                    path=path,
                    created_at=datetime.now(timezone.utc),
                )
            )
    except Exception as e:
        logger.error(f"[webhook] failed to record webhook error: {e}")


def process_webhook(
    headers: Mapping[str, str],
    body: bytes,
    *,
    path: Optional[str] = None,
    production: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Verify and apply one provider webhook.

    Raises:
        ValidationError: unknown provider or malformed payload
        SignatureInvalidError: bad signature in production
    """
    provider = detect_provider(headers)
    if provider not in PARSERS:
        raise ValidationError("Unsupported webhook provider")

    enforce = settings.is_production if production is None else production
    verified = verify_signature(provider, headers, body)
    if not verified:
        if enforce:
            webhook_events_total.inc(labels={"provider": provider, "outcome": "rejected"})
            logger.warning("[webhook] invalid signature", extra={"provider": provider})
            raise SignatureInvalidError("Invalid webhook signature")
        logger.warning("[webhook] unverified signature accepted outside production", extra={"provider": provider})

    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid webhook payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook payload")

    try:
        event = PARSERS[provider](payload)
        if event is None:
            webhook_events_total.inc(labels={"provider": provider, "outcome": "ignored"})
            return {"received": True, "processed": False, "provider": provider}

        receipt = create_subscription(
            event.uid,
            event.plan,
            event.amount,
            event.currency,
            provider,
            transaction_id=event.transaction_id,
            payment_provider_id=event.transaction_id,
            email=event.email,
            display_name=event.display_name,
            source=provider,
            now=now,
        )
    except Exception as exc:
        webhook_events_total.inc(labels={"provider": provider, "outcome": "error"})
        logger.error(f"[webhook] processing failed: {exc}", extra={"provider": provider})
        record_webhook_error(provider, str(exc), path)
        raise

    webhook_events_total.inc(labels={"provider": provider, "outcome": "duplicate" if receipt.duplicate else "processed"})
    return {
        "received": True,
        "processed": True,
        "provider": provider,
        "verified": verified,
        "duplicate": receipt.duplicate,
        "subscriptionId": receipt.subscription_id,
    }
