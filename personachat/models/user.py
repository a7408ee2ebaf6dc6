from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, field_validator

from personachat.models.billing import as_utc
from personachat.models.plan import Plan, SubscriptionStatus


DEFAULT_PREFERENCES = {"theme": "dark", "notifications": True, "language": "en"}


class User(BaseModel):
    """A user row. Legacy rows may lack counters, features or preferences."""
    model_config = ConfigDict(frozen=True)

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    plan: Plan = Plan.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    features: Optional[Dict[str, bool]] = None
    message_count: int = 0
    daily_message_count: int = 0
    last_message_date: Optional[datetime] = None
    pending_subscription_id: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("plan", mode="before")
    @classmethod
    def _coerce_plan(cls, value):
        return Plan.parse(value)

    @field_validator("subscription_status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        return SubscriptionStatus.parse(value)

    @field_validator("message_count", "daily_message_count", mode="before")
    @classmethod
    def _coerce_count(cls, value):
        return max(0, int(value or 0))

    @field_validator("last_message_date", "created_at", "last_login_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @classmethod
    def from_row(cls, row) -> "User":
        return cls.model_validate(dict(row._mapping))

    @property
    def effective_preferences(self) -> Dict[str, Any]:
        prefs = dict(DEFAULT_PREFERENCES)
        prefs.update(self.preferences or {})
        return prefs
