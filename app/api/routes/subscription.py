import math

from fastapi import APIRouter, Depends

from app.core.dates import parse_timestamp, utcnow
from app.core.entitlements import GO_LIVE, can_perform_action, get_restaurant_limits_and_usage
from app.core.features import SubscriptionTier, is_paid_tier
from app.core.permissions import RestaurantContext, require_any_access
from app.domain.schemas import (
    EntitlementResponse,
    MonthlyResetResponse,
    SubscriptionStatusResponse,
    UsageResponse,
    parse_pending_change,
)
from app.services.monthly_reset import check_monthly_reset, get_next_reset_date
from app.services.webhooks import apply_pending_change_if_due

router = APIRouter()

ACTIVE_STRIPE_STATUSES = ("active", "trialing")


@router.get("/{restaurant_id}/entitlements/{feature}", response_model=EntitlementResponse)
def check_entitlement(
    feature: str,
    action: str = GO_LIVE,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Whether the restaurant may perform ``action`` on ``feature`` right now."""
    return EntitlementResponse(**can_perform_action(ctx.restaurant, feature, action))


@router.get("/{restaurant_id}/usage", response_model=UsageResponse)
def get_usage(ctx: RestaurantContext = Depends(require_any_access)):
    return UsageResponse(**get_restaurant_limits_and_usage(ctx.restaurant))


@router.get("/{restaurant_id}/subscription", response_model=SubscriptionStatusResponse)
def get_subscription_status(ctx: RestaurantContext = Depends(require_any_access)):
    """Current plan, activity, scheduled change and next notification reset.

    A scheduled paid-tier change whose effective date has passed is applied
    before answering.
    """
    restaurant = ctx.restaurant
    apply_pending_change_if_due(restaurant)

    now = utcnow()
    tier = ctx.tier
    ends_at = parse_timestamp(restaurant.get("subscription_ends_at"))

    days_remaining = None
    if ends_at:
        days_remaining = max(0, math.ceil((ends_at - now).total_seconds() / 86400))

    if not is_paid_tier(tier.value):
        is_active = True
    else:
        is_active = bool(ends_at and ends_at > now) or (
            bool(restaurant.get("stripe_subscription_id"))
            and restaurant.get("subscription_status") in ACTIVE_STRIPE_STATUSES
        )

    return SubscriptionStatusResponse(
        tier=tier.value,
        display_name=ctx.tier_config["display_name"],
        status=restaurant.get("subscription_status"),
        billing_type=restaurant.get("billing_type") or "monthly",
        is_active=is_active or tier == SubscriptionTier.ENTERPRISE,
        days_remaining=days_remaining,
        subscription_ends_at=ends_at,
        pending_plan_change=parse_pending_change(restaurant.get("pending_plan_change")),
        plan_change_effective_date=parse_timestamp(restaurant.get("plan_change_effective_date")),
        notifications_sent_this_month=restaurant.get("notifications_sent_this_month") or 0,
        next_notification_reset=get_next_reset_date(restaurant, now),
    )


@router.post("/{restaurant_id}/subscription/check-reset", response_model=MonthlyResetResponse)
def check_reset(ctx: RestaurantContext = Depends(require_any_access)):
    """Run the monthly notification reset if one is due (dashboard page load)."""
    did_reset = check_monthly_reset(ctx.restaurant)
    return MonthlyResetResponse(
        reset=did_reset,
        notifications_sent_this_month=ctx.restaurant.get("notifications_sent_this_month") or 0,
        next_notification_reset=get_next_reset_date(ctx.restaurant),
    )
