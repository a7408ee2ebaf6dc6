"""
personachat/features/plans/service.py

Plan catalogue.

Handles:
- Prices per plan and currency, with the accepted payment tolerance
- Feature flags per plan
- Daily message limits per plan and subscription status
"""

from typing import Dict, Optional, Union

from personachat.core.errors import InvalidPaymentMethodError, ValidationError
from personachat.models.plan import PAID_PLANS, Plan, SubscriptionStatus


FREE_PLAN_DAILY_LIMIT = 20
UNLIMITED = -1

SUPPORTED_CURRENCIES = ("USD", "INR")

# Accepted deviation from the list price (processor fees, FX rounding)
AMOUNT_TOLERANCE = {
    "USD": 0.50,
    "INR": 10.0,
}

VALID_PAYMENT_METHODS = ("stripe", "paypal", "razorpay", "crypto", "manual")

FEATURE_KEYS = (
    "basicPersonas",
    "premiumPersonas",
    "unlimitedMessages",
    "prioritySupport",
    "advancedAnalytics",
    "customPersonas",
    "apiAccess",
    "exportData",
    "lockedPersonas",
    "infiniteChat",
)

DEFAULT_PLANS = {
    Plan.FREE: {
        "name": "Free",
        "prices": {"USD": 0.0, "INR": 0.0},
        "daily_limit": FREE_PLAN_DAILY_LIMIT,
        "features": {"basicPersonas"},
    },
    Plan.PRO: {
        "name": "Pro",
        "prices": {"USD": 2.50, "INR": 199.0},
        "daily_limit": UNLIMITED,
        "features": set(FEATURE_KEYS) - {"customPersonas", "apiAccess"},
    },
    Plan.PRO_PLUS: {
        "name": "Pro Plus",
        "prices": {"USD": 5.00, "INR": 399.0},
        "daily_limit": UNLIMITED,
        "features": set(FEATURE_KEYS),
    },
}


def parse_plan(value: Union[str, Plan, None], *, paid_only: bool = False) -> Plan:
    """Strictly parse a client-supplied plan name."""
    try:
        plan = value if isinstance(value, Plan) else Plan(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid plan: {value}")
    if paid_only and plan not in PAID_PLANS:
        raise ValidationError(f"Invalid plan: {plan.value}")
    return plan


def normalize_currency(currency: Optional[str]) -> str:
    code = (currency or "USD").strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency}")
    return code


def validate_payment_method(method: Optional[str]) -> str:
    value = (method or "").strip().lower()
    if value not in VALID_PAYMENT_METHODS:
        raise InvalidPaymentMethodError(f"Invalid payment method: {method}")
    return value


def get_plan_price(plan: Plan, currency: str = "USD") -> float:
    return DEFAULT_PLANS[plan]["prices"][normalize_currency(currency)]


def validate_payment_amount(plan: Plan, amount: float, currency: str = "USD") -> bool:
    """True when ``amount`` is within tolerance of the plan's list price."""
    code = normalize_currency(currency)
    expected = DEFAULT_PLANS[plan]["prices"][code]
    return round(abs(float(amount) - expected), 2) <= AMOUNT_TOLERANCE[code]


def features_for_plan(plan: Plan) -> Dict[str, bool]:
    enabled = DEFAULT_PLANS[plan]["features"]
    return {key: key in enabled for key in FEATURE_KEYS}


def free_features() -> Dict[str, bool]:
    return features_for_plan(Plan.FREE)


def daily_limit_for(plan: Plan, status: SubscriptionStatus) -> int:
    """Paid tiers are unlimited only while their subscription is active."""
    if plan in PAID_PLANS and status is not SubscriptionStatus.ACTIVE:
        return FREE_PLAN_DAILY_LIMIT
    return DEFAULT_PLANS[plan]["daily_limit"]


def get_pricing_info() -> Dict[str, Dict[str, object]]:
    """Public catalogue for the pricing page."""
    catalogue = {}
    for plan, config in DEFAULT_PLANS.items():
        catalogue[plan.value] = {
            "name": config["name"],
            "priceUSD": config["prices"]["USD"],
            "priceINR": config["prices"]["INR"],
            "dailyMessages": "unlimited" if config["daily_limit"] == UNLIMITED else config["daily_limit"],
            "features": features_for_plan(plan),
        }
    return catalogue
