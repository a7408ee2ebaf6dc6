"""
Billing models for PersonaChat.
Includes subscriptions, payments and the receipt returned after activation.
"""

from datetime import datetime, timezone
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, field_validator

from personachat.models.plan import Plan, SubscriptionStatus


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    uid: str
    plan: Plan
    status: SubscriptionStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    amount: float
    currency: str
    payment_method: str
    auto_renew: bool = True
    payment_provider_id: Optional[str] = None
    activation_token: Optional[str] = None
    activated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        return SubscriptionStatus.parse(value)

    @field_validator(
        "start_date", "end_date", "next_billing_date", "activated_at", "created_at", "updated_at",
        mode="after",
    )
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @classmethod
    def from_row(cls, row) -> "Subscription":
        return cls.model_validate(dict(row._mapping))

    def is_past_end(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date < now

    def public_dict(self) -> Dict[str, object]:
        """Subscription snapshot safe to return to its owner (no activation token)."""
        return {
            "id": self.id,
            "plan": self.plan.value,
            "status": self.status.value,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "nextBillingDate": self.next_billing_date.isoformat() if self.next_billing_date else None,
            "amount": self.amount,
            "currency": self.currency,
            "paymentMethod": self.payment_method,
            "autoRenew": self.auto_renew,
        }


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    uid: str
    subscription_id: str
    amount: float
    currency: str
    payment_method: str
    status: str = "success"
    transaction_id: str
    payment_provider_id: Optional[str] = None
    plan: Plan
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Payment":
        return cls.model_validate(dict(row._mapping))


class SubscriptionReceipt(BaseModel):
    """Outcome of a successful (or replayed) payment confirmation."""
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    payment_id: str
    uid: str
    plan: Plan
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    features: Dict[str, bool]
    transaction_id: str
    duplicate: bool = False

    def to_response(self) -> Dict[str, object]:
        return {
            "subscriptionId": self.subscription_id,
            "paymentId": self.payment_id,
            "plan": self.plan.value,
            "status": self.status.value,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "features": dict(self.features),
        }
