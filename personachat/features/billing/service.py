"""
Subscription lifecycle service.

Coordinates:
- Payment confirmation into an active subscription (one transaction)
- Email-activated subscriptions (pending_activation -> active)
- Cancellation and the expiry sweep
- Entitlement resolution with persisted downgrades

States move pending_activation -> active -> {expired, cancelled} and never
back. A user has at most one active subscription: activating a new one
cancels the previous one inside the same transaction.
"""
import calendar
import hmac
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from personachat.core.database import (
    get_db_session,
    payments,
    subscriptions,
    users,
    webhook_logs,
)
from personachat.core.errors import (
    AlreadyActivatedError,
    InvalidAmountError,
    InvalidTokenError,
    NotFoundError,
    TransactionConflictError,
    UnauthorizedError,
)
from personachat.core.metrics import subscriptions_expired_total
from personachat.features.entitlements.service import resolve_entitlement
from personachat.features.plans.service import (
    features_for_plan,
    free_features,
    get_plan_price,
    normalize_currency,
    parse_plan,
    validate_payment_amount,
    validate_payment_method,
)
from personachat.features.usage.service import reset_stale_daily_counts
from personachat.features.users.service import ensure_user, get_or_create_user, get_user, record_activity
from personachat.models.billing import Payment, Subscription, SubscriptionReceipt, as_utc
from personachat.models.entitlement import Entitlement
from personachat.models.plan import Plan, SubscriptionStatus
from personachat.models.user import User


logger = logging.getLogger(__name__)

WEBHOOK_SOURCES = ("stripe", "paypal", "razorpay")


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def add_months(start: datetime, months: int = 1) -> datetime:
    """Same day next month, clamped to the last day (Jan 31 -> Feb 28/29)."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def generate_transaction_id(payment_method: str, now: Optional[datetime] = None) -> str:
    millis = int(_normalize_now(now).timestamp() * 1000)
    return f"{payment_method}_{millis}_{secrets.token_hex(5)[:9]}"


def days_remaining(subscription: Optional[Subscription], now: Optional[Any] = None) -> Optional[int]:
    if subscription is None or subscription.end_date is None:
        return None
    delta = subscription.end_date - _normalize_now(now)
    return max(0, delta.days + (1 if delta.seconds or delta.microseconds else 0))


def _active_subscriptions(session, uid: str) -> List[Subscription]:
    rows = session.execute(
        select(subscriptions)
        .where(subscriptions.c.uid == uid)
        .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
    ).fetchall()
    subs = [Subscription.from_row(row) for row in rows]
    # newest first
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    subs.sort(key=lambda s: s.start_date or s.created_at or epoch, reverse=True)
    return subs


def get_active_subscription(uid: str, *, session=None) -> Optional[Subscription]:
    if session is not None:
        subs = _active_subscriptions(session, uid)
        return subs[0] if subs else None
    with get_db_session() as own_session:
        return get_active_subscription(uid, session=own_session)


def get_subscription(subscription_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        return Subscription.from_row(row) if row else None


def get_payment_by_transaction(transaction_id: str) -> Optional[Payment]:
    with get_db_session() as session:
        row = session.execute(
            select(payments).where(payments.c.transaction_id == transaction_id)
        ).first()
        return Payment.from_row(row) if row else None


def _cancel_other_active(session, uid: str, keep_id: Optional[str], now: datetime) -> List[str]:
    cancelled = [s.id for s in _active_subscriptions(session, uid) if s.id != keep_id]
    if cancelled:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id.in_(cancelled))
            .values(status=SubscriptionStatus.CANCELLED.value, auto_renew=False, updated_at=now)
        )
        logger.info("[billing] superseded active subscriptions", extra={"user_id": uid, "subscription_ids": cancelled})
    return cancelled


def _receipt_for_payment(session, payment_row, *, duplicate: bool) -> SubscriptionReceipt:
    sub_row = session.execute(
        select(subscriptions).where(subscriptions.c.id == payment_row.subscription_id)
    ).first()
    sub = Subscription.from_row(sub_row)
    return SubscriptionReceipt(
        subscription_id=sub.id,
        payment_id=payment_row.id,
        uid=sub.uid,
        plan=sub.plan,
        status=sub.status,
        start_date=sub.start_date,
        end_date=sub.end_date,
        features=features_for_plan(sub.plan),
        transaction_id=payment_row.transaction_id,
        duplicate=duplicate,
    )


def _replayed_receipt(transaction_id: str, uid: str, plan: Plan) -> Optional[SubscriptionReceipt]:
    """Receipt of an earlier confirmation of the same payment, if any.

    A transaction id recorded for another user or plan is not a replay.
    """
    with get_db_session() as session:
        row = session.execute(
            select(payments).where(payments.c.transaction_id == transaction_id)
        ).first()
        if not row:
            return None
        if row.uid != uid or row.plan != plan.value:
            logger.warning(
                "[billing] transaction id reused for a different payment",
                extra={"user_id": uid, "transaction_id": transaction_id, "plan": plan.value},
            )
            raise TransactionConflictError("Transaction already recorded for another payment")
        return _receipt_for_payment(session, row, duplicate=True)


def create_subscription(
    uid: str,
    plan: Any,
    amount: float,
    currency: Optional[str],
    payment_method: str,
    *,
    transaction_id: Optional[str] = None,
    payment_provider_id: Optional[str] = None,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    source: str = "payment_confirm",
    request_meta: Optional[Dict[str, Optional[str]]] = None,
    now: Optional[Any] = None,
) -> SubscriptionReceipt:
    """
    Turn a confirmed payment into an active one-month subscription.

    The user upgrade, the subscription row, the payment row and the audit
    entry are written in one transaction. Replaying a ``transaction_id``
    for the same user and plan returns the original receipt with
    ``duplicate=True``.

    Raises:
        ValidationError: unknown plan or currency
        InvalidPaymentMethodError: method outside the accepted list
        InvalidAmountError: amount outside the plan price tolerance
        TransactionConflictError: ``transaction_id`` belongs to another payment
    """
    plan_value = parse_plan(plan, paid_only=True)
    method = validate_payment_method(payment_method)
    code = normalize_currency(currency)
    try:
        paid = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmountError("Payment amount does not match plan price")
    if not validate_payment_amount(plan_value, paid, code):
        logger.warning(
            "[billing] amount mismatch",
            extra={"user_id": uid, "plan": plan_value.value, "amount": paid, "currency": code},
        )
        raise InvalidAmountError("Payment amount does not match plan price")

    normalized_now = _normalize_now(now)
    txn = transaction_id or generate_transaction_id(method, normalized_now)
    meta = request_meta or {}

    if transaction_id:
        replay = _replayed_receipt(txn, uid, plan_value)
        if replay:
            logger.info("[billing] duplicate payment confirmation", extra={"user_id": uid, "transaction_id": txn})
            return replay

    subscription_id = str(uuid4())
    payment_id = str(uuid4())
    end_date = add_months(normalized_now, 1)
    features = features_for_plan(plan_value)

    try:
        with get_db_session() as session:
            user = ensure_user(session, uid, normalized_now, email=email, display_name=display_name)
            _cancel_other_active(session, uid, None, normalized_now)

            session.execute(
                insert(subscriptions).values(
                    id=subscription_id,
                    uid=uid,
                    plan=plan_value.value,
                    status=SubscriptionStatus.ACTIVE.value,
                    start_date=normalized_now,
                    end_date=end_date,
                    next_billing_date=end_date,
                    amount=paid,
                    currency=code,
                    payment_method=method,
                    auto_renew=True,
                    payment_provider_id=payment_provider_id,
                    activated_at=normalized_now,
                    created_at=normalized_now,
                    updated_at=normalized_now,
                )
            )
            session.execute(
                insert(payments).values(
                    id=payment_id,
                    uid=uid,
                    subscription_id=subscription_id,
                    amount=paid,
                    currency=code,
                    payment_method=method,
                    status="success",
                    transaction_id=txn,
                    payment_provider_id=payment_provider_id,
                    plan=plan_value.value,
                    created_at=normalized_now,
                    processed_at=normalized_now,
                )
            )

            user_values = {
                "plan": plan_value.value,
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "features": features,
                "pending_subscription_id": None,
                "updated_at": normalized_now,
            }
            if email and not user.email:
                user_values["email"] = email
            if display_name and not user.display_name:
                user_values["display_name"] = display_name
            session.execute(update(users).where(users.c.uid == uid).values(**user_values))

            if source in WEBHOOK_SOURCES:
                session.execute(
                    insert(webhook_logs).values(
                        uid=uid,
                        event="subscription_activated",
                        provider=source,
                        transaction_id=txn,
                        amount=paid,
                        currency=code,
                        plan=plan_value.value,
                        processed=True,
                        created_at=normalized_now,
                    )
                )
            record_activity(
                session,
                uid,
                "subscription_activated",
                {
                    "plan": plan_value.value,
                    "amount": paid,
                    "currency": code,
                    "paymentMethod": method,
                    "transactionId": txn,
                    "subscriptionId": subscription_id,
                    "source": source,
                },
                ip_address=meta.get("ip_address"),
                user_agent=meta.get("user_agent"),
                now=normalized_now,
            )
    except IntegrityError:
        # Lost a race against the same transaction id
        replay = _replayed_receipt(txn, uid, plan_value)
        if replay is None:
            raise
        return replay

    logger.info(
        "[billing] subscription activated",
        extra={"user_id": uid, "plan": plan_value.value, "subscription_id": subscription_id, "source": source},
    )
    return SubscriptionReceipt(
        subscription_id=subscription_id,
        payment_id=payment_id,
        uid=uid,
        plan=plan_value,
        status=SubscriptionStatus.ACTIVE,
        start_date=normalized_now,
        end_date=end_date,
        features=features,
        transaction_id=txn,
    )


def confirm_manual_payment(uid: str, plan: Any, currency: Optional[str] = "USD", *, now: Optional[Any] = None) -> SubscriptionReceipt:
    """Confirm an out-of-band (email instructions) payment at list price."""
    plan_value = parse_plan(plan, paid_only=True)
    code = normalize_currency(currency)
    user = get_user(uid)
    return create_subscription(
        uid,
        plan_value,
        get_plan_price(plan_value, code),
        code,
        "manual",
        email=user.email if user else None,
        source="manual_confirmation",
        now=now,
    )


def send_payment_instructions(uid: str, plan: Any, currency: Optional[str] = "USD", *, now: Optional[Any] = None) -> Dict[str, Any]:
    """Record that manual payment instructions were issued.

    There is no mail transport; the instructions are returned to the caller
    and the request is written to the activity log.
    """
    plan_value = parse_plan(plan, paid_only=True)
    code = normalize_currency(currency)
    normalized_now = _normalize_now(now)
    instructions = {
        "plan": plan_value.value,
        "amount": get_plan_price(plan_value, code),
        "currency": code,
    }
    with get_db_session() as session:
        ensure_user(session, uid, normalized_now)
        record_activity(session, uid, "payment_instructions_sent", instructions, now=normalized_now)
    logger.info("[billing] payment instructions issued", extra={"user_id": uid, "plan": plan_value.value})
    return instructions


def create_pending_subscription(
    uid: str,
    plan: Any,
    *,
    email: Optional[str] = None,
    currency: Optional[str] = "USD",
    now: Optional[Any] = None,
) -> Tuple[Subscription, str]:
    """Create a subscription that only becomes active once its token is presented.

    Returns:
        (subscription, activation_token)
    """
    plan_value = parse_plan(plan, paid_only=True)
    code = normalize_currency(currency)
    normalized_now = _normalize_now(now)
    token = secrets.token_urlsafe(32)
    subscription_id = str(uuid4())

    with get_db_session() as session:
        ensure_user(session, uid, normalized_now, email=email)
        values = dict(
            id=subscription_id,
            uid=uid,
            plan=plan_value.value,
            status=SubscriptionStatus.PENDING_ACTIVATION.value,
            amount=get_plan_price(plan_value, code),
            currency=code,
            payment_method="manual",
            auto_renew=True,
            activation_token=token,
            created_at=normalized_now,
            updated_at=normalized_now,
        )
        session.execute(insert(subscriptions).values(**values))
        session.execute(
            update(users)
            .where(users.c.uid == uid)
            .values(
                plan=plan_value.value,
                subscription_status=SubscriptionStatus.PENDING_ACTIVATION.value,
                pending_subscription_id=subscription_id,
                updated_at=normalized_now,
            )
        )
        record_activity(
            session,
            uid,
            "subscription_created",
            {"plan": plan_value.value, "status": SubscriptionStatus.PENDING_ACTIVATION.value, "subscriptionId": subscription_id},
            now=normalized_now,
        )

    logger.info(
        "[billing] activation requested",
        extra={"user_id": uid, "subscription_id": subscription_id, "plan": plan_value.value},
    )
    return Subscription.model_validate(values), token


def activate_subscription(uid: str, subscription_id: str, activation_token: str, *, now: Optional[Any] = None) -> Subscription:
    """Activate a pending subscription.

    Raises, in this order:
        NotFoundError, UnauthorizedError, InvalidTokenError, AlreadyActivatedError
    """
    normalized_now = _normalize_now(now)
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id).with_for_update()
        ).first()
        if not row:
            raise NotFoundError("Subscription not found")
        sub = Subscription.from_row(row)
        if sub.uid != uid:
            raise UnauthorizedError("Unauthorized")
        if not sub.activation_token or not hmac.compare_digest(
            sub.activation_token.encode(), (activation_token or "").encode()
        ):
            raise InvalidTokenError("Invalid activation token")
        if sub.status is not SubscriptionStatus.PENDING_ACTIVATION:
            raise AlreadyActivatedError("Subscription already activated or expired")

        end_date = add_months(normalized_now, 1)
        _cancel_other_active(session, uid, sub.id, normalized_now)
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == sub.id)
            .values(
                status=SubscriptionStatus.ACTIVE.value,
                start_date=normalized_now,
                end_date=end_date,
                next_billing_date=end_date,
                activated_at=normalized_now,
                updated_at=normalized_now,
            )
        )
        session.execute(
            update(users)
            .where(users.c.uid == uid)
            .values(
                plan=sub.plan.value,
                subscription_status=SubscriptionStatus.ACTIVE.value,
                features=features_for_plan(sub.plan),
                pending_subscription_id=None,
                updated_at=normalized_now,
            )
        )
        record_activity(
            session,
            uid,
            "subscription_activated",
            {"plan": sub.plan.value, "subscriptionId": sub.id, "source": "activation_token"},
            now=normalized_now,
        )
        activated = session.execute(select(subscriptions).where(subscriptions.c.id == sub.id)).first()

    logger.info("[billing] subscription activated by token", extra={"user_id": uid, "subscription_id": subscription_id})
    return Subscription.from_row(activated)


def cancel_subscription(uid: str, *, now: Optional[Any] = None) -> Subscription:
    """Cancel the user's active subscription and downgrade immediately."""
    normalized_now = _normalize_now(now)
    with get_db_session() as session:
        sub = get_active_subscription(uid, session=session)
        if sub is None:
            raise NotFoundError("No active subscription")
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == sub.id)
            .values(status=SubscriptionStatus.CANCELLED.value, auto_renew=False, updated_at=normalized_now)
        )
        session.execute(
            update(users)
            .where(users.c.uid == uid)
            .values(
                plan=Plan.FREE.value,
                subscription_status=SubscriptionStatus.CANCELLED.value,
                features=free_features(),
                updated_at=normalized_now,
            )
        )
        record_activity(session, uid, "subscription_cancelled", {"plan": sub.plan.value, "subscriptionId": sub.id}, now=normalized_now)
        cancelled = session.execute(select(subscriptions).where(subscriptions.c.id == sub.id)).first()

    logger.info("[billing] subscription cancelled", extra={"user_id": uid, "subscription_id": sub.id})
    return Subscription.from_row(cancelled)


def _expire(session, sub: Subscription, now: datetime) -> bool:
    """Flip ``sub`` to expired and downgrade its owner.

    Only the caller whose update moves the row out of ``active`` writes the
    downgrade and the activity entry; a concurrent sweep or renewal that got
    there first makes this a no-op. Returns True when this call expired it.
    """
    result = session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == sub.id)
        .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
    )
    if result.rowcount != 1:
        return False

    if not _active_subscriptions(session, sub.uid):
        session.execute(
            update(users)
            .where(users.c.uid == sub.uid)
            .values(
                plan=Plan.FREE.value,
                subscription_status=SubscriptionStatus.EXPIRED.value,
                features=free_features(),
                updated_at=now,
            )
        )
    end = as_utc(sub.end_date)
    record_activity(
        session,
        sub.uid,
        "subscription_expired",
        {"plan": sub.plan.value, "subscriptionId": sub.id, "endDate": end.isoformat() if end else None},
        now=now,
    )
    return True


def expire_subscriptions(now: Optional[Any] = None) -> List[str]:
    """Expire every active subscription whose end date has passed.

    Returns the affected uids; a second run with the same clock returns [].
    """
    normalized_now = _normalize_now(now)
    expired_uids: List[str] = []
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .where(subscriptions.c.end_date.isnot(None))
        ).fetchall()
        for row in rows:
            sub = Subscription.from_row(row)
            if not sub.is_past_end(normalized_now):
                continue
            if _expire(session, sub, normalized_now) and sub.uid not in expired_uids:
                expired_uids.append(sub.uid)

    if expired_uids:
        subscriptions_expired_total.inc(amount=len(expired_uids))
        logger.info("[billing] expired subscriptions", extra={"count": len(expired_uids)})
    return expired_uids


def resolve_user_entitlement(uid: str, *, now: Optional[Any] = None) -> Tuple[User, Optional[Subscription], Entitlement]:
    """Load, resolve and, when needed, persist the expiry downgrade."""
    normalized_now = _normalize_now(now)
    user = get_or_create_user(uid, now=normalized_now)
    sub = get_active_subscription(uid)
    entitlement = resolve_entitlement(user, sub, normalized_now)

    if entitlement.downgrade_required and sub is not None:
        with get_db_session() as session:
            expired = _expire(session, sub, normalized_now)
        if expired:
            subscriptions_expired_total.inc()
            logger.info("[billing] downgraded on read", extra={"user_id": uid, "subscription_id": sub.id})
            user = get_user(uid) or user
            sub = None
        else:
            # Swept or renewed since the read; resolve against what is stored now
            user = get_user(uid) or user
            sub = get_active_subscription(uid)
            entitlement = resolve_entitlement(user, sub, normalized_now)

    return user, sub, entitlement


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def run_maintenance(action: str, *, now: Optional[Any] = None) -> Dict[str, Any]:
    """Internal cron entry point: check-expiry, reset-daily or full-check."""
    normalized_now = _normalize_now(now)
    start = time.perf_counter()
    result: Dict[str, Any] = {"action": action}
    if action in ("check-expiry", "full-check"):
        expired = expire_subscriptions(normalized_now)
        result["expiredSubscriptions"] = len(expired)
        result["expiredUsers"] = expired
    if action in ("reset-daily", "full-check"):
        resets = reset_stale_daily_counts(normalized_now)
        result["resetCount"] = len(resets)
        result["resets"] = resets
    result["durationMs"] = _elapsed_ms(start)
    result["timestamp"] = normalized_now.isoformat()
    return result
