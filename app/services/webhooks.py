"""
Stripe webhook handling.

Handles Stripe webhook events for the subscription lifecycle:
- checkout.session.completed: activation fee paid, subscription starts
- customer.subscription.updated: renewal applied a scheduled plan change,
  or the status / cancel-at-period-end flag changed
- customer.subscription.deleted: subscription ended, back to free
- invoice.payment_failed: subscription is past due

Every other event type is acknowledged and ignored. Handlers only ever write
absolute state, so replays of the same event are harmless; checkout
completion is additionally keyed on the session id.
"""
import logging
from datetime import datetime

import stripe

from app.core.config import get_settings
from app.core.dates import add_months, parse_timestamp, utcnow
from app.core.errors import SignatureVerificationError
from app.core.features import get_tier_config, parse_tier
from app.core.prices import plan_for_price
from app.domain.schemas import parse_pending_change
from app.repositories.restaurant import RestaurantRepository
from app.services.billing import current_period_end, subscription_item

logger = logging.getLogger(__name__)

# Used when a tier has no included months configured
DEFAULT_INCLUDED_MONTHS = 2


def construct_event(payload: bytes, sig_header: str | None):
    """Verify the Stripe signature and parse the event.

    Raises:
        SignatureVerificationError: secret missing, bad payload or bad signature
    """
    secret = get_settings().stripe_webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
        raise SignatureVerificationError("Webhook secret not configured")
    if not sig_header:
        raise SignatureVerificationError("Missing Stripe-Signature header")

    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret)
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise SignatureVerificationError("Invalid payload")
    except stripe.error.SignatureVerificationError as e:
        logger.warning(f"Invalid webhook signature: {e}")
        raise SignatureVerificationError("Invalid signature")


def handle_event(event) -> bool:
    """Dispatch a verified event. Returns True if a handler ran."""
    event_type = event["type"]
    obj = event["data"]["object"]
    logger.info(f"Received Stripe event {event.get('id')}: {event_type}")

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type: {event_type}")
        return False

    handler(obj)
    return True


def subscription_ends_at(tier: str, now: datetime) -> datetime:
    """End of the prepaid window bought with the activation fee."""
    months = get_tier_config(tier)["included_months"] or DEFAULT_INCLUDED_MONTHS
    return add_months(now, months)


def handle_checkout_completed(session) -> None:
    """Activate the plan paid for in a checkout session.

    Creates the recurring subscription (trialing until the included months
    run out) when the session carries a recurring price and the restaurant
    has no subscription yet.
    """
    if session.get("mode") != "payment":
        logger.info(f"Checkout session {session.get('id')} is in {session.get('mode')} mode, ignoring")
        return

    metadata = session.get("metadata") or {}
    restaurant_id = metadata.get("restaurantId")
    plan_id = metadata.get("planId")
    if not restaurant_id or not plan_id:
        logger.info(f"Checkout session {session.get('id')} has no restaurant/plan metadata, ignoring")
        return

    restaurant = RestaurantRepository.get_by_id(restaurant_id)
    if not restaurant:
        logger.warning(f"Checkout session {session.get('id')} references unknown restaurant {restaurant_id}")
        return

    if restaurant.get("stripe_checkout_session_id") == session["id"]:
        logger.info(f"Checkout session {session['id']} already applied to restaurant {restaurant_id}")
        return

    tier = parse_tier(plan_id).value
    billing_type = metadata.get("billingType") or "monthly"
    now = utcnow()
    ends_at = subscription_ends_at(tier, now)

    fields = {
        "subscription_status": "active",
        "subscription_tier": tier,
        "billing_type": billing_type,
        "subscription_ends_at": ends_at.isoformat(),
        "stripe_checkout_session_id": session["id"],
        "activation_fee_paid": True,
    }
    if not restaurant.get("subscription_started_at"):
        fields["subscription_started_at"] = now.isoformat()

    price_id = metadata.get("meteredPrice") if billing_type == "metered" else metadata.get("recurringPrice")
    customer_id = session.get("customer") or restaurant.get("stripe_customer_id")

    if price_id and not restaurant.get("stripe_subscription_id"):
        if not customer_id:
            details = session.get("customer_details") or {}
            customer = stripe.Customer.create(
                email=details.get("email"),
                metadata={"restaurantId": restaurant_id},
                idempotency_key=f"customer-{session['id']}",
            )
            customer_id = customer["id"]

        # Keyed on the session so a redelivery cannot create a second subscription
        subscription = stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            trial_end=int(ends_at.timestamp()),
            metadata={"restaurantId": restaurant_id, "planId": tier, "billingType": billing_type},
            idempotency_key=f"subscription-{session['id']}",
        )
        fields["stripe_subscription_id"] = subscription["id"]
        fields["stripe_metered_item_id"] = (
            subscription_item(subscription)["id"] if billing_type == "metered" else None
        )
        logger.info(f"Created subscription {subscription['id']} for restaurant {restaurant_id}")

    if customer_id:
        fields["stripe_customer_id"] = customer_id

    RestaurantRepository.update(restaurant_id, **fields)
    logger.info(f"Restaurant {restaurant_id} activated on {tier}/{billing_type} until {ends_at.isoformat()}")


def apply_pending_change_if_due(restaurant: dict, now: datetime | None = None) -> bool:
    """Apply a scheduled paid-tier change once its effective date has passed.

    Downgrades to free are applied by ``customer.subscription.deleted``.
    """
    pending = parse_pending_change(restaurant.get("pending_plan_change"))
    effective = parse_timestamp(restaurant.get("plan_change_effective_date"))
    if not pending or not effective or pending.tier == "free":
        return False
    if (now or utcnow()) < effective:
        return False

    updated = RestaurantRepository.update(
        restaurant["id"],
        subscription_tier=pending.tier,
        billing_type=pending.billing_type,
        pending_plan_change=None,
        plan_change_effective_date=None,
    )
    if updated:
        restaurant.update(updated)
    logger.info(f"Applied scheduled change to {pending.tier}/{pending.billing_type} for restaurant {restaurant['id']}")
    return True


def handle_subscription_updated(subscription) -> None:
    """Mirror Stripe's view of a subscription onto the restaurant.

    A price that differs from the restaurant's plan never changes the tier
    right away. When it matches the scheduled change and the effective date
    has passed (the renewal), the change is applied. A price swap nobody
    scheduled, e.g. from the billing portal, is recorded as the pending
    change for the end of the current period.
    """
    subscription_id = subscription["id"]
    status = subscription.get("status")

    restaurant = RestaurantRepository.get_by_stripe_subscription_id(subscription_id)
    if not restaurant:
        logger.warning(f"Restaurant not found for subscription {subscription_id}")
        return

    item = subscription_item(subscription)
    new_plan = plan_for_price(item.get("price", {}).get("id"))
    plan_changed = new_plan is not None and (
        restaurant.get("subscription_tier") != new_plan["tier"]
        or restaurant.get("billing_type") != new_plan["billing_type"]
    )

    fields = {"subscription_status": status}
    pending = parse_pending_change(restaurant.get("pending_plan_change"))
    effective = parse_timestamp(restaurant.get("plan_change_effective_date"))
    scheduled = (
        plan_changed
        and pending is not None
        and pending.tier == new_plan["tier"]
        and pending.billing_type == new_plan["billing_type"]
    )

    cancelling = bool(subscription.get("cancel_at_period_end"))
    cancellation_pending = pending is not None and pending.tier == "free"

    if scheduled and effective is not None and utcnow() >= effective:
        logger.info(
            f"Plan changed from {restaurant.get('subscription_tier')}/{restaurant.get('billing_type')} "
            f"to {new_plan['tier']}/{new_plan['billing_type']} for subscription {subscription_id}"
        )
        fields.update({
            "subscription_tier": new_plan["tier"],
            "billing_type": new_plan["billing_type"],
            "stripe_metered_item_id": item["id"] if new_plan["billing_type"] == "metered" else None,
            "pending_plan_change": None,
            "plan_change_effective_date": None,
        })
        pending = None
    elif plan_changed and not scheduled and not (cancelling and cancellation_pending):
        period_end = current_period_end(subscription)
        if period_end is not None:
            logger.info(
                f"Unscheduled price change to {new_plan['tier']}/{new_plan['billing_type']} "
                f"for subscription {subscription_id}, pending until {period_end.isoformat()}"
            )
            fields["pending_plan_change"] = {"tier": new_plan["tier"], "billing_type": new_plan["billing_type"]}
            fields["plan_change_effective_date"] = period_end.isoformat()
            pending = parse_pending_change(fields["pending_plan_change"])

    if cancelling:
        period_end = current_period_end(subscription)
        if period_end is not None and not (pending and pending.tier == "free"):
            fields["pending_plan_change"] = {"tier": "free", "billing_type": "monthly"}
            fields["plan_change_effective_date"] = period_end.isoformat()
    elif pending and pending.tier == "free":
        # Cancellation was withdrawn, e.g. from the billing portal
        fields["pending_plan_change"] = None
        fields["plan_change_effective_date"] = None

    RestaurantRepository.update_by_stripe_subscription_id(subscription_id, **fields)


def handle_subscription_deleted(subscription) -> None:
    """Subscription ended: back to free, clear every Stripe reference."""
    RestaurantRepository.update_by_stripe_subscription_id(
        subscription["id"],
        subscription_status="cancelled",
        subscription_tier="free",
        billing_type="monthly",
        stripe_subscription_id=None,
        stripe_metered_item_id=None,
        pending_plan_change=None,
        plan_change_effective_date=None,
    )
    logger.info(f"Subscription {subscription['id']} deleted, restaurant reverted to free")


def handle_payment_failed(invoice) -> None:
    customer_id = invoice.get("customer")
    if not customer_id:
        return
    RestaurantRepository.update_by_stripe_customer_id(customer_id, subscription_status="past_due")
    logger.warning(f"Payment failed for customer {customer_id}, marked past_due")


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_payment_failed,
}
