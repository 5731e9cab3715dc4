"""
Stripe billing synchronizer.

Every operation is one call (or a short sequence of calls) to Stripe paired
with a write of the matching subscription fields on the restaurant row.
Scheduling a change writes the row first and restores it if Stripe refuses;
cancelling one changes Stripe first and rolls it back if the write fails. Either
way the two never disagree about a scheduled plan change.

Plan changes never prorate and never apply immediately: the new price is set
on the subscription item with ``proration_behavior=none`` and the restaurant
keeps its current tier until the renewal webhook applies the pending change.
"""
import logging
import time

import httpx
import stripe

from app.core.config import get_settings
from app.core.dates import from_unix
from app.core.errors import (
    InvalidFormat,
    InvalidPlan,
    InvalidPlanConfiguration,
    MissingCustomerId,
    NoActiveSubscription,
    NoPendingChange,
    NotConfigured,
    NotFoundError,
    UpstreamBillingError,
    ValidationError,
)
from app.core.prices import BILLING_TYPES, checkout_prices, recurring_price_id
from app.domain.schemas import parse_pending_change, pending_change_as_dict
from app.repositories.restaurant import RestaurantRepository

logger = logging.getLogger(__name__)

SUBSCRIPTION_ID_PREFIX = "sub_"


def subscription_item(subscription) -> dict:
    """The single line item of a restaurant subscription."""
    return subscription["items"]["data"][0]


def current_period_end(subscription):
    """Period end of a subscription as a datetime.

    Newer Stripe API versions report the period on the item, older ones on
    the subscription itself.
    """
    seconds = subscription.get("current_period_end")
    if seconds is None:
        seconds = subscription_item(subscription).get("current_period_end")
    return from_unix(seconds)


def _as_dict(obj) -> dict:
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return dict(obj)


def validate_subscription_id(subscription_id: str | None) -> str:
    if not subscription_id:
        raise ValidationError("Subscription ID required")
    if not subscription_id.startswith(SUBSCRIPTION_ID_PREFIX):
        raise InvalidFormat()
    return subscription_id


class BillingService:
    """Service for Stripe checkout, subscriptions and metered usage."""

    def __init__(self, http_client: httpx.Client | None = None):
        settings = get_settings()
        self.api_key = settings.stripe_secret_key
        self.api_base = settings.stripe_api_base.rstrip("/")
        self.web_app_url = settings.web_app_url
        stripe.api_key = self.api_key
        self.http_client = http_client

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set!")

    # ------------------------------------------------------------------
    # Stripe helpers
    # ------------------------------------------------------------------

    def _retrieve(self, subscription_id: str):
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.error.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFoundError("Subscription not found")
            raise UpstreamBillingError(str(e.user_message or e))
        except stripe.error.StripeError as e:
            logger.error(f"Stripe error retrieving subscription {subscription_id}: {e}")
            raise UpstreamBillingError(str(e.user_message or e))

    def _modify(self, subscription_id: str, **params):
        try:
            return stripe.Subscription.modify(subscription_id, **params)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe error updating subscription {subscription_id}: {e}")
            raise UpstreamBillingError(str(e.user_message or e))

    def _persist_or_rollback(self, restaurant_id: str, fields: dict, subscription_id: str, rollback: dict) -> dict:
        """Write ``fields`` to the restaurant; undo the Stripe change if that fails."""
        try:
            updated = RestaurantRepository.update(restaurant_id, **fields)
        except Exception as e:
            updated = None
            logger.error(f"Failed to persist billing change for restaurant {restaurant_id}: {e}")

        if updated is None:
            logger.warning(f"Rolling back Stripe subscription {subscription_id} for restaurant {restaurant_id}")
            try:
                stripe.Subscription.modify(subscription_id, **rollback)
            except stripe.error.StripeError as e:
                logger.error(f"Rollback of subscription {subscription_id} failed: {e}")
            raise UpstreamBillingError("Failed to save subscription change")
        return updated

    def _save(self, restaurant_id: str, fields: dict) -> dict:
        try:
            updated = RestaurantRepository.update(restaurant_id, **fields)
        except Exception as e:
            updated = None
            logger.error(f"Failed to persist billing change for restaurant {restaurant_id}: {e}")
        if updated is None:
            raise UpstreamBillingError("Failed to save subscription change")
        return updated

    def _modify_or_restore(self, subscription_id: str, params: dict, restaurant_id: str, restore: dict):
        """Apply ``params`` to Stripe; put the restaurant fields back if Stripe refuses."""
        try:
            return stripe.Subscription.modify(subscription_id, **params)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe error updating subscription {subscription_id}: {e}")
            logger.warning(f"Restoring billing fields for restaurant {restaurant_id}")
            try:
                RestaurantRepository.update(restaurant_id, **restore)
            except Exception as restore_error:
                logger.error(f"Restore of restaurant {restaurant_id} failed: {restore_error}")
            raise UpstreamBillingError(str(e.user_message or e))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_checkout(
        self,
        restaurant: dict,
        plan_id: str,
        billing_type: str = "monthly",
        origin: str | None = None,
    ) -> dict:
        """Open a hosted checkout for a plan's one-time activation fee.

        The recurring subscription is created by the webhook once the fee is
        paid, so the price to subscribe to travels in the session metadata.

        Returns:
            {"url", "session_id"}
        """
        plan = checkout_prices().get(plan_id)
        if not plan:
            raise InvalidPlan(plan_id)
        if billing_type not in BILLING_TYPES:
            raise ValidationError("Invalid billing type")

        base_url = origin or self.web_app_url
        metadata = {
            "restaurantId": restaurant["id"],
            "planId": plan_id,
            "billingType": billing_type,
        }
        if billing_type == "metered":
            metadata["meteredPrice"] = plan["metered"]
        else:
            metadata["recurringPrice"] = plan["monthly"]

        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{"price": plan["activation"], "quantity": 1}],
            "payment_intent_data": {"setup_future_usage": "off_session"},
            "success_url": f"{base_url}/dashboard?payment=success",
            "cancel_url": f"{base_url}/dashboard?payment=cancelled",
            "client_reference_id": restaurant["id"],
            "metadata": metadata,
        }
        if restaurant.get("stripe_customer_id"):
            params["customer"] = restaurant["stripe_customer_id"]
        else:
            params["customer_creation"] = "always"

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe error creating checkout for restaurant {restaurant['id']}: {e}")
            raise UpstreamBillingError(str(e.user_message or e))

        logger.info(f"Created checkout session {session['id']} for restaurant {restaurant['id']} ({plan_id})")
        return {"url": session["url"], "session_id": session["id"]}

    def create_billing_portal(
        self,
        customer_id: str | None,
        return_url: str | None = None,
        origin: str | None = None,
    ) -> dict:
        """Open Stripe's self-service billing portal for a customer."""
        if not customer_id:
            raise MissingCustomerId()

        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url or f"{origin or self.web_app_url}/dashboard",
            )
        except stripe.error.StripeError as e:
            logger.error(f"Stripe error creating billing portal for {customer_id}: {e}")
            raise UpstreamBillingError(str(e.user_message or e))

        return {"url": session["url"]}

    def retrieve_subscription(self, subscription_id: str | None) -> dict:
        """Fetch a subscription from Stripe after validating the id format."""
        validate_subscription_id(subscription_id)
        return _as_dict(self._retrieve(subscription_id))

    def update_subscription(self, restaurant: dict, new_tier: str, new_billing_type: str) -> dict:
        """Schedule a tier/billing change for the next renewal.

        Downgrading to free cancels at period end. Any other change swaps the
        subscription item's price without proration and un-cancels the
        subscription. The restaurant's current tier is left as is; only
        ``pending_plan_change`` and ``plan_change_effective_date`` are set.

        The pending change is written before Stripe is touched, so the
        ``customer.subscription.updated`` webhook for the price swap always
        finds it. When the change replaces an earlier scheduled change or a
        scheduled cancellation, that state is kept under ``previous`` for
        cancel_pending_change to restore.

        Returns:
            {"effective_date", "new_plan": {"tier", "billing_type"}, "message"}
        """
        restaurant_id = restaurant["id"]
        subscription_id = restaurant.get("stripe_subscription_id")
        if not subscription_id:
            raise NoActiveSubscription()

        new_price_id = None
        if new_tier == "free":
            new_billing_type = "monthly"
        else:
            new_price_id = recurring_price_id(new_tier, new_billing_type)
            if not new_price_id:
                raise InvalidPlanConfiguration()

        subscription = self._retrieve(subscription_id)
        effective_date = current_period_end(subscription)
        item = subscription_item(subscription)
        was_cancelling = bool(subscription.get("cancel_at_period_end"))
        new_plan = {"tier": new_tier, "billing_type": new_billing_type}

        pending = dict(new_plan)
        if was_cancelling or restaurant.get("pending_plan_change"):
            pending["previous"] = {
                "price_id": item["price"]["id"],
                "cancel_at_period_end": was_cancelling,
                "pending_plan_change": pending_change_as_dict(restaurant.get("pending_plan_change")),
                "plan_change_effective_date": restaurant.get("plan_change_effective_date"),
                "stripe_metered_item_id": restaurant.get("stripe_metered_item_id"),
            }

        fields = {
            "pending_plan_change": pending,
            "plan_change_effective_date": effective_date.isoformat(),
        }
        if new_tier == "free":
            params = {"cancel_at_period_end": True}
        else:
            fields["stripe_metered_item_id"] = item["id"] if new_billing_type == "metered" else None
            params = {
                "items": [{"id": item["id"], "price": new_price_id}],
                "proration_behavior": "none",
                "cancel_at_period_end": False,
            }

        restore = {key: restaurant.get(key) for key in fields}
        self._save(restaurant_id, fields)
        self._modify_or_restore(subscription_id, params, restaurant_id, restore)

        if new_tier == "free":
            logger.info(f"Restaurant {restaurant_id} scheduled cancellation at {effective_date.isoformat()}")
            message = "Subscription will be cancelled at period end"
        else:
            logger.info(
                f"Restaurant {restaurant_id} scheduled change to {new_tier}/{new_billing_type} "
                f"at {effective_date.isoformat()}"
            )
            message = "Plan change scheduled for the next billing cycle"
        return {
            "effective_date": effective_date,
            "new_plan": new_plan,
            "message": message,
        }

    def cancel_pending_change(self, restaurant: dict) -> dict:
        """Undo a scheduled plan change before it takes effect.

        Puts the Stripe price, the cancel-at-period-end flag and the pending
        fields back to what they were before the change was scheduled.
        """
        restaurant_id = restaurant["id"]
        pending = parse_pending_change(restaurant.get("pending_plan_change"))
        if not pending:
            raise NoPendingChange()

        subscription_id = restaurant.get("stripe_subscription_id")
        if not subscription_id:
            raise NoActiveSubscription()

        subscription = self._retrieve(subscription_id)
        item = subscription_item(subscription)
        live_price_id = item["price"]["id"]
        previous = pending.previous

        fields = {
            "pending_plan_change": None,
            "plan_change_effective_date": None,
        }
        if previous is not None:
            params = {"cancel_at_period_end": previous.cancel_at_period_end}
            if previous.price_id and previous.price_id != live_price_id:
                params["items"] = [{"id": item["id"], "price": previous.price_id}]
                params["proration_behavior"] = "none"
            fields = {
                "pending_plan_change": previous.pending_plan_change,
                "plan_change_effective_date": previous.plan_change_effective_date,
                "stripe_metered_item_id": previous.stripe_metered_item_id,
            }
        elif pending.tier == "free":
            params = {"cancel_at_period_end": False}
        else:
            current_price_id = recurring_price_id(
                restaurant.get("subscription_tier"), restaurant.get("billing_type")
            )
            if not current_price_id:
                logger.warning(
                    f"No recurring price for restaurant {restaurant_id} "
                    f"({restaurant.get('subscription_tier')}/{restaurant.get('billing_type')}); "
                    "clearing pending change without touching Stripe"
                )
                params = None
            else:
                params = {
                    "items": [{"id": item["id"], "price": current_price_id}],
                    "proration_behavior": "none",
                }
            # Scheduling overwrote the metered item id; restore it for the current plan
            fields["stripe_metered_item_id"] = item["id"] if restaurant.get("billing_type") == "metered" else None

        if params is None:
            RestaurantRepository.update(restaurant_id, **fields)
        else:
            self._modify(subscription_id, **params)
            rollback = {"cancel_at_period_end": bool(subscription.get("cancel_at_period_end"))}
            if "items" in params:
                rollback["items"] = [{"id": item["id"], "price": live_price_id}]
                rollback["proration_behavior"] = "none"
            self._persist_or_rollback(restaurant_id, fields, subscription_id, rollback)

        logger.info(f"Restaurant {restaurant_id} cancelled pending change to {pending.tier}")
        return {"success": True, "message": "Pending plan change cancelled successfully"}

    def report_usage(self, restaurant: dict, quantity: int) -> dict:
        """Report metered usage (stamps) for the current billing period.

        Posts directly to the usage-records endpoint as a form-encoded request;
        restaurants on monthly billing are a successful no-op.
        """
        if restaurant.get("billing_type") != "metered":
            return {"success": True, "message": "No usage tracking needed for monthly billing"}

        item_id = restaurant.get("stripe_metered_item_id")
        if not item_id:
            raise NotConfigured()

        url = f"{self.api_base}/v1/subscription_items/{item_id}/usage_records"
        data = {
            "quantity": quantity,
            "timestamp": int(time.time()),
            "action": "increment",
        }

        client = self.http_client or httpx.Client(timeout=30.0)
        try:
            response = client.post(url, data=data, auth=(self.api_key, ""))
        except httpx.HTTPError as e:
            logger.error(f"Usage report for restaurant {restaurant['id']} failed: {e}")
            raise UpstreamBillingError(str(e))
        finally:
            if self.http_client is None:
                client.close()

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400 or not isinstance(body, dict):
            error = body.get("error") if isinstance(body, dict) else None
            message = (error or {}).get("message") or f"Stripe returned {response.status_code}"
            logger.error(f"Usage report for restaurant {restaurant['id']} rejected: {message}")
            raise UpstreamBillingError(message)

        logger.info(f"Usage record {body.get('id')} created for restaurant {restaurant['id']} (+{quantity})")
        return {
            "success": True,
            "usage_record": {"id": body["id"], "quantity": body["quantity"]},
        }


def create_billing_service() -> BillingService:
    """Factory for BillingService."""
    return BillingService()
