"""Tests for the Stripe billing synchronizer."""

from urllib.parse import parse_qs

import httpx
import pytest
import stripe

from app.core.config import settings
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
)
from app.domain.schemas import parse_pending_change
from app.services.billing import BillingService
from app.services.webhooks import handle_subscription_updated

PERIOD_END = 1893456000  # 2030-01-01T00:00:00Z


def no_http(request):
    raise AssertionError(f"Unexpected HTTP call to {request.url}")


@pytest.fixture
def billing():
    return BillingService(http_client=httpx.Client(transport=httpx.MockTransport(no_http)))


@pytest.fixture
def subscribed(fake_db, fake_stripe, make_restaurant):
    """A basic/monthly restaurant with a live Stripe subscription."""
    fake_stripe.add_subscription(
        subscription_id="sub_live1",
        price_id=settings.stripe_price_basic_monthly,
        period_end=PERIOD_END,
        item_id="si_live1",
    )
    return make_restaurant(
        subscription_tier="basic",
        billing_type="monthly",
        stripe_customer_id="cus_test123",
        stripe_subscription_id="sub_live1",
    )


def reload(fake_db, restaurant):
    return dict(fake_db.row("restaurants", restaurant["id"]))


# ============================================
# Checkout & portal
# ============================================

class TestCheckout:
    def test_checkout_charges_activation_fee(self, billing, fake_stripe, make_restaurant):
        restaurant = make_restaurant()

        result = billing.create_checkout(restaurant, "basic", origin="https://app.example.com")

        assert result == {"url": "https://checkout.stripe.com/c/pay/cs_test_abc", "session_id": "cs_test_abc"}
        _, _, params = fake_stripe.calls_named("create_checkout_session")[0]
        assert params["mode"] == "payment"
        assert params["line_items"] == [{"price": settings.stripe_price_basic_activation, "quantity": 1}]
        assert params["payment_intent_data"] == {"setup_future_usage": "off_session"}
        assert params["metadata"]["recurringPrice"] == settings.stripe_price_basic_monthly
        assert params["metadata"]["billingType"] == "monthly"
        assert params["customer_creation"] == "always"
        assert params["success_url"].startswith("https://app.example.com/")

    def test_metered_checkout_reuses_customer(self, billing, fake_stripe, make_restaurant):
        restaurant = make_restaurant(stripe_customer_id="cus_existing")

        billing.create_checkout(restaurant, "premium", billing_type="metered")

        _, _, params = fake_stripe.calls_named("create_checkout_session")[0]
        assert params["customer"] == "cus_existing"
        assert params["metadata"]["meteredPrice"] == settings.stripe_price_premium_metered
        assert "recurringPrice" not in params["metadata"]
        assert params["success_url"].startswith(settings.web_app_url)

    @pytest.mark.parametrize("plan_id", ["gold", "free", "enterprise", ""])
    def test_invalid_plan(self, billing, fake_stripe, make_restaurant, plan_id):
        with pytest.raises(InvalidPlan):
            billing.create_checkout(make_restaurant(), plan_id)
        assert fake_stripe.calls == []

    def test_billing_portal_requires_customer(self, billing, fake_stripe):
        with pytest.raises(MissingCustomerId):
            billing.create_billing_portal(None)

        result = billing.create_billing_portal("cus_test123", origin="https://app.example.com")
        assert result["url"].startswith("https://billing.stripe.com/")
        _, _, params = fake_stripe.calls_named("create_portal_session")[0]
        assert params["return_url"] == "https://app.example.com/dashboard"


class TestRetrieveSubscription:
    def test_rejects_malformed_id(self, billing, fake_stripe):
        with pytest.raises(InvalidFormat):
            billing.retrieve_subscription("cus_123")
        assert fake_stripe.calls == []

    def test_missing_subscription(self, billing, fake_stripe):
        with pytest.raises(NotFoundError):
            billing.retrieve_subscription("sub_missing")

    def test_returns_subscription(self, billing, subscribed):
        subscription = billing.retrieve_subscription("sub_live1")
        assert subscription["id"] == "sub_live1"


# ============================================
# Scheduling plan changes
# ============================================

class TestUpdateSubscription:
    def test_downgrade_to_free_cancels_at_period_end(self, billing, fake_db, fake_stripe, subscribed):
        result = billing.update_subscription(subscribed, "free", "monthly")

        assert result["effective_date"] == from_unix(PERIOD_END)
        assert result["new_plan"] == {"tier": "free", "billing_type": "monthly"}
        assert fake_stripe.subscriptions["sub_live1"]["cancel_at_period_end"] is True

        stored = reload(fake_db, subscribed)
        assert stored["subscription_tier"] == "basic"
        assert stored["pending_plan_change"] == {"tier": "free", "billing_type": "monthly"}
        assert stored["plan_change_effective_date"] == from_unix(PERIOD_END).isoformat()

    def test_upgrade_swaps_price_without_proration(self, billing, fake_db, fake_stripe, subscribed):
        billing.update_subscription(subscribed, "premium", "metered")

        _, _, params = fake_stripe.calls_named("modify")[0]
        assert params["proration_behavior"] == "none"
        assert params["items"] == [{"id": "si_live1", "price": settings.stripe_price_premium_metered}]

        stored = reload(fake_db, subscribed)
        assert stored["subscription_tier"] == "basic"
        assert stored["billing_type"] == "monthly"
        assert parse_pending_change(stored["pending_plan_change"]).tier == "premium"
        assert stored["stripe_metered_item_id"] == "si_live1"

    def test_webhook_during_price_swap_keeps_current_tier(self, billing, fake_db, fake_stripe, subscribed, monkeypatch):
        modify = fake_stripe.modify

        def modify_and_deliver_webhook(subscription_id, **params):
            updated = modify(subscription_id, **params)
            handle_subscription_updated(updated)
            return updated

        monkeypatch.setattr(stripe.Subscription, "modify", modify_and_deliver_webhook)

        billing.update_subscription(subscribed, "premium", "monthly")

        stored = reload(fake_db, subscribed)
        assert stored["subscription_tier"] == "basic"
        assert parse_pending_change(stored["pending_plan_change"]).tier == "premium"
        assert stored["plan_change_effective_date"] == from_unix(PERIOD_END).isoformat()

    def test_requires_subscription(self, billing, make_restaurant):
        with pytest.raises(NoActiveSubscription):
            billing.update_subscription(make_restaurant(subscription_tier="basic"), "premium", "monthly")

    def test_unknown_target_plan(self, billing, subscribed):
        with pytest.raises(InvalidPlanConfiguration):
            billing.update_subscription(subscribed, "enterprise", "monthly")

    def test_stripe_failure_leaves_row_untouched(self, billing, fake_db, fake_stripe, subscribed):
        fake_stripe.fail_modify = True
        with pytest.raises(UpstreamBillingError):
            billing.update_subscription(subscribed, "premium", "monthly")
        assert reload(fake_db, subscribed)["pending_plan_change"] is None

    def test_database_failure_leaves_stripe_untouched(self, billing, fake_db, fake_stripe, subscribed):
        fake_db.fail_tables["restaurants"] = "update"

        with pytest.raises(UpstreamBillingError):
            billing.update_subscription(subscribed, "premium", "monthly")

        assert fake_stripe.calls_named("modify") == []
        subscription = fake_stripe.subscriptions["sub_live1"]
        assert subscription["items"]["data"][0]["price"]["id"] == settings.stripe_price_basic_monthly
        assert subscription["cancel_at_period_end"] is False


class TestCancelPendingChange:
    @pytest.mark.parametrize("tier,billing_type", [
        ("free", "monthly"),
        ("premium", "monthly"),
        ("premium", "metered"),
        ("basic", "metered"),
    ])
    def test_update_then_cancel_restores_previous_state(self, billing, fake_db, fake_stripe, subscribed, tier, billing_type):
        before = fake_stripe.retrieve("sub_live1")

        billing.update_subscription(subscribed, tier, billing_type)
        result = billing.cancel_pending_change(reload(fake_db, subscribed))

        assert result == {"success": True, "message": "Pending plan change cancelled successfully"}
        after = fake_stripe.subscriptions["sub_live1"]
        assert after["items"]["data"][0]["price"]["id"] == before["items"]["data"][0]["price"]["id"]
        assert after["cancel_at_period_end"] == before["cancel_at_period_end"]

        stored = reload(fake_db, subscribed)
        assert stored["pending_plan_change"] is None
        assert stored["plan_change_effective_date"] is None
        assert stored["stripe_metered_item_id"] is None

    def test_cancel_restores_scheduled_cancellation(self, billing, fake_db, fake_stripe, make_restaurant):
        fake_stripe.add_subscription(
            subscription_id="sub_c",
            price_id=settings.stripe_price_basic_monthly,
            period_end=PERIOD_END,
            cancel_at_period_end=True,
        )
        restaurant = make_restaurant(
            subscription_tier="basic",
            billing_type="monthly",
            stripe_subscription_id="sub_c",
            pending_plan_change={"tier": "free", "billing_type": "monthly"},
            plan_change_effective_date=from_unix(PERIOD_END).isoformat(),
        )

        billing.update_subscription(restaurant, "premium", "monthly")
        assert fake_stripe.subscriptions["sub_c"]["cancel_at_period_end"] is False

        billing.cancel_pending_change(reload(fake_db, restaurant))

        after = fake_stripe.subscriptions["sub_c"]
        assert after["cancel_at_period_end"] is True
        assert after["items"]["data"][0]["price"]["id"] == settings.stripe_price_basic_monthly
        stored = reload(fake_db, restaurant)
        assert stored["pending_plan_change"] == {"tier": "free", "billing_type": "monthly"}
        assert stored["plan_change_effective_date"] == from_unix(PERIOD_END).isoformat()

    def test_cancel_restores_earlier_upgrade(self, billing, fake_db, fake_stripe, subscribed):
        billing.update_subscription(subscribed, "premium", "monthly")
        billing.update_subscription(reload(fake_db, subscribed), "free", "monthly")

        billing.cancel_pending_change(reload(fake_db, subscribed))

        after = fake_stripe.subscriptions["sub_live1"]
        assert after["cancel_at_period_end"] is False
        assert after["items"]["data"][0]["price"]["id"] == settings.stripe_price_premium_monthly
        stored = reload(fake_db, subscribed)
        assert parse_pending_change(stored["pending_plan_change"]).tier == "premium"
        assert stored["subscription_tier"] == "basic"

    def test_nothing_pending(self, billing, subscribed):
        with pytest.raises(NoPendingChange):
            billing.cancel_pending_change(subscribed)


# ============================================
# Metered usage
# ============================================

class TestReportUsage:
    def test_monthly_billing_is_a_no_op(self, billing, fake_stripe, make_restaurant):
        restaurant = make_restaurant(subscription_tier="basic", billing_type="monthly")

        result = billing.report_usage(restaurant, 5)

        assert result["success"] is True
        assert result["message"].startswith("No usage tracking needed")
        assert fake_stripe.calls == []

    def test_metered_posts_usage_record(self, make_restaurant):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["form"] = parse_qs(request.content.decode())
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"id": "mbur_123", "quantity": 3, "object": "usage_record"})

        billing = BillingService(http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        restaurant = make_restaurant(billing_type="metered", stripe_metered_item_id="si_metered")

        result = billing.report_usage(restaurant, 3)

        assert result == {"success": True, "usage_record": {"id": "mbur_123", "quantity": 3}}
        assert seen["path"] == "/v1/subscription_items/si_metered/usage_records"
        assert seen["form"]["quantity"] == ["3"]
        assert seen["form"]["action"] == ["increment"]
        assert seen["auth"].startswith("Basic ")

    def test_stripe_error_is_passed_through(self, make_restaurant):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "No such subscription item: 'si_gone'"}})

        billing = BillingService(http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        restaurant = make_restaurant(billing_type="metered", stripe_metered_item_id="si_gone")

        with pytest.raises(UpstreamBillingError) as exc_info:
            billing.report_usage(restaurant, 1)
        assert "si_gone" in exc_info.value.message

    def test_non_json_gateway_error(self, make_restaurant):
        def handler(request):
            return httpx.Response(502, text="<html>Bad gateway</html>")

        billing = BillingService(http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        restaurant = make_restaurant(billing_type="metered", stripe_metered_item_id="si_metered")

        with pytest.raises(UpstreamBillingError) as exc_info:
            billing.report_usage(restaurant, 1)
        assert exc_info.value.message == "Stripe returned 502"

    def test_metered_without_item(self, billing, make_restaurant):
        with pytest.raises(NotConfigured):
            billing.report_usage(make_restaurant(billing_type="metered"), 1)
