"""
personachat/models/plan.py

Plan tiers and subscription states.
"""

from enum import Enum


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    PRO_PLUS = "pro-plus"

    @classmethod
    def parse(cls, value) -> "Plan":
        """Coerce stored values, treating unknown or missing tiers as free."""
        if isinstance(value, Plan):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.FREE

    @property
    def is_paid(self) -> bool:
        return self is not Plan.FREE


PAID_PLANS = (Plan.PRO, Plan.PRO_PLUS)


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING_ACTIVATION = "pending_activation"
    PAST_DUE = "past_due"

    @classmethod
    def parse(cls, value) -> "SubscriptionStatus":
        if isinstance(value, SubscriptionStatus):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.INACTIVE
