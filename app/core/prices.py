"""
Static Stripe price tables.

Maps (tier, billing type) to Stripe price identifiers and back. Only basic
and premium are sold through Stripe; enterprise is invoiced manually and
free has no subscription.
"""
from typing import TypedDict

from app.core.config import settings
from app.core.features import BillingType

BILLING_TYPES = tuple(b.value for b in BillingType)


class CheckoutPrices(TypedDict):
    activation: str
    monthly: str
    metered: str


def checkout_prices() -> dict[str, CheckoutPrices]:
    """Activation + recurring prices per purchasable plan."""
    return {
        "basic": {
            "activation": settings.stripe_price_basic_activation,
            "monthly": settings.stripe_price_basic_monthly,
            "metered": settings.stripe_price_basic_metered,
        },
        "premium": {
            "activation": settings.stripe_price_premium_activation,
            "monthly": settings.stripe_price_premium_monthly,
            "metered": settings.stripe_price_premium_metered,
        },
    }


def recurring_price_id(tier: str | None, billing_type: str | None) -> str | None:
    """Recurring price for a tier/billing type pair, or None if not sold."""
    plan = checkout_prices().get(tier or "")
    if not plan or billing_type not in BILLING_TYPES:
        return None
    return plan[billing_type]


def plan_for_price(price_id: str | None) -> dict | None:
    """Reverse lookup: {"tier", "billing_type"} for a recurring price id."""
    if not price_id:
        return None
    for tier, plan in checkout_prices().items():
        for billing_type in BILLING_TYPES:
            if plan[billing_type] == price_id:
                return {"tier": tier, "billing_type": billing_type}
    return None
