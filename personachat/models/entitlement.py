"""
personachat/models/entitlement.py

Resolved entitlement for a single request.

Never persisted: it is recomputed from the user's plan, subscription status
and active subscription every time it is needed.
"""

from typing import Dict
from pydantic import BaseModel, ConfigDict

from personachat.models.plan import Plan, SubscriptionStatus


class Entitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: Plan
    subscription_status: SubscriptionStatus
    daily_limit: int  # -1 = unlimited
    features: Dict[str, bool]
    subscription_expired: bool = False
    # Set when an active subscription is past its end date and the stored
    # user/subscription rows still need to be downgraded.
    downgrade_required: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.daily_limit < 0

    def has_feature(self, name: str) -> bool:
        return bool(self.features.get(name, False))
