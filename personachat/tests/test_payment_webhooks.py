import hashlib
import hmac
import json
import time

import pytest
from sqlalchemy import func, select

from personachat.core.database import get_db_session, payments, subscriptions, users, webhook_errors, webhook_logs
from personachat.core.errors import SignatureInvalidError, ValidationError
from personachat.features.billing.webhooks import (
    compute_hmac_hex,
    detect_provider,
    process_webhook,
    verify_hmac_signature,
    verify_stripe_signature,
)
from personachat.features.users.service import get_user
from personachat.models.plan import Plan

STRIPE_SECRET = "whsec_test"
RAZORPAY_SECRET = "razorpay-test-secret"
PAYPAL_SECRET = "paypal-test-secret"


def _count(table) -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar_one()


def _stripe_header(body: bytes, secret: str = STRIPE_SECRET, timestamp: int = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.{body.decode()}".encode()
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def _stripe_event(uid="w_user", plan="pro", amount=250, intent_id="pi_123") -> bytes:
    return json.dumps({
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": intent_id,
            "amount": amount,
            "currency": "usd",
            "metadata": {"uid": uid, "plan": plan, "email": f"{uid}@example.com"},
        }},
    }).encode()


def _razorpay_event(uid="r_user", plan="pro-plus", amount=39900) -> bytes:
    return json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": "pay_abc",
            "amount": amount,
            "currency": "INR",
            "notes": {"uid": uid, "plan": plan},
        }}},
    }).encode()


def test_detect_provider():
    assert detect_provider({"x-webhook-provider": "PayPal"}) == "paypal"
    assert detect_provider({"stripe-signature": "t=1,v1=x"}) == "stripe"
    assert detect_provider({"x-razorpay-signature": "abc"}) == "razorpay"
    assert detect_provider({}) is None


def test_hmac_signature_verification():
    body = b'{"a": 1}'
    sig = compute_hmac_hex(RAZORPAY_SECRET, body)
    assert verify_hmac_signature(body, sig, RAZORPAY_SECRET)
    assert verify_hmac_signature(body, f"sha256={sig}", RAZORPAY_SECRET)
    assert not verify_hmac_signature(body, sig, "other")
    assert not verify_hmac_signature(body, None, RAZORPAY_SECRET)
    assert not verify_hmac_signature(body, "ünïcode", RAZORPAY_SECRET)


def test_stripe_signature_verification():
    body = _stripe_event()
    assert verify_stripe_signature(body, _stripe_header(body), STRIPE_SECRET)
    assert not verify_stripe_signature(body, _stripe_header(body, secret="whsec_other"), STRIPE_SECRET)
    stale = _stripe_header(body, timestamp=int(time.time()) - 3600)
    assert not verify_stripe_signature(body, stale, STRIPE_SECRET)


def test_stripe_payment_activates_subscription():
    body = _stripe_event()
    result = process_webhook({"stripe-signature": _stripe_header(body)}, body, production=True)

    assert result["processed"] is True
    assert result["verified"] is True
    assert result["duplicate"] is False
    user = get_user("w_user")
    assert user.plan is Plan.PRO
    assert user.email == "w_user@example.com"
    assert _count(webhook_logs) == 1


def test_redelivered_event_is_not_applied_twice():
    body = _stripe_event(intent_id="pi_dupe")
    headers = {"stripe-signature": _stripe_header(body)}
    first = process_webhook(headers, body, production=True)
    second = process_webhook(headers, body, production=True)

    assert second["duplicate"] is True
    assert second["subscriptionId"] == first["subscriptionId"]
    assert _count(subscriptions) == 1
    assert _count(payments) == 1


def test_invalid_signature_in_production_writes_nothing():
    body = _razorpay_event()
    with pytest.raises(SignatureInvalidError) as exc:
        process_webhook({"x-razorpay-signature": "deadbeef"}, body, production=True)

    assert exc.value.status_code == 401
    assert _count(users) == 0
    assert _count(subscriptions) == 0
    assert _count(payments) == 0
    assert _count(webhook_errors) == 0


def test_unverified_webhook_processed_outside_production():
    body = _razorpay_event()
    result = process_webhook({"x-razorpay-signature": "deadbeef"}, body, production=False)
    assert result["processed"] is True
    assert result["verified"] is False
    assert get_user("r_user").plan is Plan.PRO_PLUS


def test_razorpay_amount_in_paise():
    body = _razorpay_event(amount=39900)
    sig = compute_hmac_hex(RAZORPAY_SECRET, body)
    result = process_webhook({"x-razorpay-signature": sig}, body, production=True)
    assert result["verified"] is True

    with get_db_session() as session:
        payment = session.execute(select(payments)).first()
    assert payment.amount == 399.0
    assert payment.currency == "INR"
    assert payment.payment_method == "razorpay"


def test_paypal_custom_id_metadata():
    body = json.dumps({
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-1",
            "amount": {"value": "5.00", "currency_code": "USD"},
            "custom_id": json.dumps({"uid": "p_user", "plan": "pro-plus"}),
        },
    }).encode()
    sig = compute_hmac_hex(PAYPAL_SECRET, body)
    result = process_webhook({"paypal-transmission-sig": sig}, body, production=True)
    assert result["processed"] is True
    assert get_user("p_user").plan is Plan.PRO_PLUS


def test_unhandled_event_type_is_acknowledged():
    body = json.dumps({"type": "customer.created", "data": {"object": {}}}).encode()
    result = process_webhook({"stripe-signature": _stripe_header(body)}, body, production=True)
    assert result == {"received": True, "processed": False, "provider": "stripe"}
    assert _count(users) == 0


def test_processing_failure_is_recorded():
    body = _stripe_event(amount=100)  # 1.00 USD for pro
    with pytest.raises(ValidationError):
        process_webhook({"stripe-signature": _stripe_header(body)}, body, path="/payment/webhook", production=True)

    with get_db_session() as session:
        row = session.execute(select(webhook_errors)).first()
    assert row.provider == "stripe"
    assert row.path == "/payment/webhook"
    assert _count(subscriptions) == 0


def test_unknown_provider_rejected():
    with pytest.raises(ValidationError):
        process_webhook({}, b"{}", production=False)
