"""
Entitlement checking for subscription-gated features.

Decides, for every gated feature, whether a restaurant may create a draft or
take something live (send, for notifications), based on its current tier and
usage counted live from the database.

Usage:
    @router.post("/{restaurant_id}/promotions/{promotion_id}/go-live")
    def go_live(promotion_id: str, ctx: RestaurantContext = Depends(require_any_access)):
        ensure_can_go_live(ctx.restaurant, "promotions")
        ...

The check itself is read-only. The state transition that follows is done with
a conditional update in the database, so a check that raced with another
request can still be refused at write time.
"""
import logging
from datetime import datetime, timezone
from typing import TypedDict

from fastapi import HTTPException, status

from app.core.features import (
    Feature,
    SubscriptionTier,
    get_limit,
    get_tier_config,
    next_tier,
    parse_tier,
)
from app.repositories.event import EventRepository
from app.repositories.loyalty_card import LoyaltyCardRepository
from app.repositories.promotion import PromotionRepository
from app.services.monthly_reset import reset_due

logger = logging.getLogger(__name__)

CREATE_DRAFT = "create_draft"
GO_LIVE = "go_live"
SEND = "send"  # notifications call their go-live action "send"


class EntitlementResult(TypedDict):
    allowed: bool
    current: int
    limit: int | None
    message: str
    requires_upgrade: bool
    suggested_tier: str | None


class LimitExceededError(HTTPException):
    """Raised when a go-live action is refused by the plan limits."""

    def __init__(self, feature: str, result: EntitlementResult):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "LIMIT_EXCEEDED",
                "feature": feature,
                "allowed": False,
                "current": result["current"],
                "limit": result["limit"],
                "message": result["message"],
                "requiresUpgrade": result["requires_upgrade"],
                "suggestedTier": result["suggested_tier"],
            }
        )
        self.result = result


def _suggested_tier(tier: SubscriptionTier, limit: int | None) -> str:
    if limit == 0:
        return SubscriptionTier.BASIC.value
    return next_tier(tier.value).value


def _count_current(restaurant: dict, feature: Feature, now: datetime) -> int:
    restaurant_id = restaurant["id"]
    if feature == Feature.CARDS:
        return LoyaltyCardRepository.count_live(restaurant_id)
    if feature == Feature.PROMOTIONS:
        return PromotionRepository.count_active(restaurant_id)
    if feature == Feature.EVENTS:
        return EventRepository.count_active(restaurant_id, today=now.date())

    # Notifications use the persisted monthly counter; a counter whose reset
    # boundary has already passed counts as zero.
    if reset_due(restaurant, now):
        return 0
    return restaurant.get("notifications_sent_this_month") or 0


def _message(feature: Feature, current: int, limit: int | None) -> str:
    if feature == Feature.CARDS and limit == 0:
        return "Free tier cannot make cards live. Upgrade to Basic to activate loyalty cards."
    if feature == Feature.NOTIFICATIONS and limit == 0:
        return "Push notifications not available on Free tier"

    if limit is None:
        noun = {
            Feature.CARDS: "live cards",
            Feature.PROMOTIONS: "active promotions",
            Feature.EVENTS: "active events",
            Feature.NOTIFICATIONS: "notifications sent this month",
        }[feature]
        return f"You have {current} {noun} (unlimited on your plan)"

    if feature == Feature.CARDS:
        return f"You have {current} of {limit} live cards"
    if feature == Feature.PROMOTIONS:
        return f"You have {current} of {limit} active promotions"
    if feature == Feature.EVENTS:
        return f"You have {current} of {limit} active events"
    return f"You've sent {current} of {limit} notifications this month"


def can_perform_action(
    restaurant: dict,
    feature: str,
    action: str = GO_LIVE,
    now: datetime | None = None,
) -> EntitlementResult:
    """Check whether a restaurant may perform ``action`` on ``feature``.

    Args:
        restaurant: The restaurant row, freshly read for this request
        feature: 'cards', 'promotions', 'events' or 'notifications'
        action: 'create_draft', 'go_live' (or 'send')
        now: Clock override, for tests

    Returns:
        EntitlementResult. Drafts are always allowed. A failed count query
        denies the action.
    """
    tier = parse_tier(restaurant.get("subscription_tier"))

    if action == CREATE_DRAFT:
        return {
            "allowed": True,
            "current": 0,
            "limit": None,
            "message": "Draft creation allowed for all tiers",
            "requires_upgrade": False,
            "suggested_tier": None,
        }

    if action not in (GO_LIVE, SEND):
        return {
            "allowed": False,
            "current": 0,
            "limit": 0,
            "message": "Unknown action",
            "requires_upgrade": False,
            "suggested_tier": None,
        }

    try:
        gated = Feature(feature)
    except ValueError:
        return {
            "allowed": False,
            "current": 0,
            "limit": 0,
            "message": f"Unknown feature '{feature}'",
            "requires_upgrade": False,
            "suggested_tier": None,
        }

    limit = get_limit(tier.value, gated.value)
    now = now or datetime.now(timezone.utc)

    try:
        current = _count_current(restaurant, gated, now)
    except Exception as e:
        logger.error(f"Error checking {gated.value} limit for restaurant {restaurant.get('id')}: {e}")
        return {
            "allowed": False,
            "current": 0,
            "limit": limit,
            "message": "Error checking limits",
            "requires_upgrade": False,
            "suggested_tier": None,
        }

    allowed = limit is None or current < limit
    return {
        "allowed": allowed,
        "current": current,
        "limit": limit,
        "message": _message(gated, current, limit),
        "requires_upgrade": not allowed,
        "suggested_tier": None if allowed else _suggested_tier(tier, limit),
    }


def ensure_can_go_live(restaurant: dict, feature: str) -> EntitlementResult:
    """Raise LimitExceededError unless ``feature`` may go live right now."""
    result = can_perform_action(restaurant, feature, GO_LIVE)
    if not result["allowed"]:
        logger.info(
            f"Go-live denied for restaurant {restaurant.get('id')}: {feature} "
            f"({result['current']}/{result['limit']})"
        )
        raise LimitExceededError(feature, result)
    return result


def get_restaurant_usage(restaurant: dict, now: datetime | None = None) -> dict:
    """Get current usage of every gated feature for a restaurant.

    Useful for displaying usage stats in the dashboard. Counted on the same
    UTC clock as can_perform_action.
    """
    restaurant_id = restaurant["id"]
    now = now or datetime.now(timezone.utc)
    notifications = 0 if reset_due(restaurant, now) else (restaurant.get("notifications_sent_this_month") or 0)
    return {
        "cards": LoyaltyCardRepository.count_live(restaurant_id),
        "promotions": PromotionRepository.count_active(restaurant_id),
        "events": EventRepository.count_active(restaurant_id, today=now.date()),
        "notifications": notifications,
    }


def get_restaurant_limits_and_usage(restaurant: dict) -> dict:
    """Get tier, limits and current usage for the billing page."""
    tier = parse_tier(restaurant.get("subscription_tier"))
    return {
        "tier": tier.value,
        "limits": get_tier_config(tier.value),
        "usage": get_restaurant_usage(restaurant),
    }
