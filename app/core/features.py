"""
Tier catalog and plan limits.
Single source of truth for subscription entitlements.

This module defines what each subscription tier can do:
- How many loyalty cards, promotions and events can be live at once
- How many push notifications can be sent per billing month
- Pricing metadata shown on the upgrade and billing pages

A limit of ``None`` means unlimited.
"""
from enum import Enum
from typing import TypedDict


class SubscriptionTier(str, Enum):
    """Subscription tier identifiers, in ascending order."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class BillingType(str, Enum):
    """How a paid subscription is charged after the included months."""
    MONTHLY = "monthly"
    METERED = "metered"


class Feature(str, Enum):
    """Features whose go-live / send action is gated by the tier."""
    CARDS = "cards"
    PROMOTIONS = "promotions"
    EVENTS = "events"
    NOTIFICATIONS = "notifications"


class TierConfig(TypedDict):
    """Type definition for a tier's limits and pricing."""
    max_live_cards: int | None  # None = unlimited
    max_live_promotions: int | None  # None = unlimited
    max_live_events: int | None  # None = unlimited
    max_notifications_per_month: int | None  # None = unlimited
    activation_fee: float | None  # None = quoted individually
    monthly_fee: float | None
    included_months: int
    display_name: str


UNLIMITED = None

TIER_ORDER: list[SubscriptionTier] = [
    SubscriptionTier.FREE,
    SubscriptionTier.BASIC,
    SubscriptionTier.PREMIUM,
    SubscriptionTier.ENTERPRISE,
]

# Tier configuration - edit here to change limits
TIER_CONFIG: dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.FREE: {
        "max_live_cards": 0,
        "max_live_promotions": 1,
        "max_live_events": 1,
        "max_notifications_per_month": 0,
        "activation_fee": 0.0,
        "monthly_fee": 0.0,
        "included_months": 0,
        "display_name": "Free",
    },
    SubscriptionTier.BASIC: {
        "max_live_cards": 1,
        "max_live_promotions": 3,
        "max_live_events": 2,
        "max_notifications_per_month": 2,
        "activation_fee": 29.90,
        "monthly_fee": 9.90,
        "included_months": 2,
        "display_name": "Basic",
    },
    SubscriptionTier.PREMIUM: {
        "max_live_cards": 3,
        "max_live_promotions": 9,
        "max_live_events": 6,
        "max_notifications_per_month": 6,
        "activation_fee": 49.90,
        "monthly_fee": 14.90,
        "included_months": 2,
        "display_name": "Premium",
    },
    SubscriptionTier.ENTERPRISE: {
        "max_live_cards": UNLIMITED,
        "max_live_promotions": UNLIMITED,
        "max_live_events": UNLIMITED,
        "max_notifications_per_month": UNLIMITED,
        "activation_fee": None,
        "monthly_fee": None,
        "included_months": 0,
        "display_name": "Enterprise",
    },
}

FEATURE_LIMIT_KEYS: dict[Feature, str] = {
    Feature.CARDS: "max_live_cards",
    Feature.PROMOTIONS: "max_live_promotions",
    Feature.EVENTS: "max_live_events",
    Feature.NOTIFICATIONS: "max_notifications_per_month",
}


def parse_tier(tier: str | None) -> SubscriptionTier:
    """Coerce a stored tier string, falling back to FREE if unknown."""
    try:
        return SubscriptionTier(tier)
    except ValueError:
        return SubscriptionTier.FREE


def get_tier_config(tier: str | None) -> TierConfig:
    """Get limits and pricing for a subscription tier.

    Args:
        tier: The subscription tier string

    Returns:
        TierConfig dict for the tier, defaults to FREE if unknown
    """
    return TIER_CONFIG[parse_tier(tier)]


def get_limit(tier: str | None, feature: str) -> int | None:
    """Get the go-live limit of a feature for a tier.

    Args:
        tier: The subscription tier string
        feature: One of 'cards', 'promotions', 'events', 'notifications'

    Returns:
        The limit value, or None if unlimited
    """
    config = get_tier_config(tier)
    return config[FEATURE_LIMIT_KEYS[Feature(feature)]]


def next_tier(tier: str | None) -> SubscriptionTier:
    """The tier directly above ``tier``; enterprise is its own ceiling."""
    index = TIER_ORDER.index(parse_tier(tier))
    return TIER_ORDER[min(index + 1, len(TIER_ORDER) - 1)]


def is_paid_tier(tier: str | None) -> bool:
    return parse_tier(tier) != SubscriptionTier.FREE
