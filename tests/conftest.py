"""Shared fixtures: an in-memory Supabase, a scripted Stripe, and a test client."""

import copy
import os
import uuid
from datetime import date, datetime, timezone

import pytest
import stripe

os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["WEB_APP_URL"] = "https://dashboard.example.com"
os.environ.pop("DOPPLER_TOKEN", None)

from fastapi.testclient import TestClient

import database.supabase_client
from app.api.deps import get_billing_service
from app.core.config import settings
from app.core.security import require_auth
from app.main import create_app

OWNER = {"sub": "user-owner", "email": "owner@example.com"}
STAFF = {"sub": "user-staff", "email": "staff@example.com"}
STRANGER = {"sub": "user-stranger", "email": "nobody@example.com"}

TABLE_DEFAULTS = {
    "restaurants": {
        "owner_id": OWNER["sub"],
        "authorized_staff_emails": [],
        "subscription_tier": "free",
        "subscription_status": "active",
        "billing_type": "monthly",
        "subscription_started_at": None,
        "subscription_ends_at": None,
        "pending_plan_change": None,
        "plan_change_effective_date": None,
        "stripe_customer_id": None,
        "stripe_subscription_id": None,
        "stripe_metered_item_id": None,
        "stripe_checkout_session_id": None,
        "activation_fee_paid": False,
        "notifications_sent_this_month": 0,
        "last_notification_reset": None,
    },
    "loyalty_cards": {
        "campaign_status": "draft",
        "is_active": False,
        "discovery_qr_code": None,
        "campaign_start_date": None,
        "deleted_at": None,
    },
    "promotions": {"status": "draft", "deleted_at": None},
    "events": {"status": "draft", "deleted_at": None},
    "push_notifications": {"sent_at": None, "scheduled_for": None},
    "staff_audit_log": {},
}


# ============================================
# In-memory Supabase
# ============================================

class FakeResult:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Subset of the PostgREST query builder used by the repositories."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.count_mode = None
        self.filters = []
        self.order_by = None
        self.row_limit = None

    def select(self, columns="*", count=None):
        self.op = "select"
        self.count_mode = count
        return self

    def insert(self, data):
        self.op = "insert"
        self.payload = data
        return self

    def update(self, data):
        self.op = "update"
        self.payload = data
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column, value):
        assert value == "null"
        self.filters.append(lambda row: row.get(column) is None)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) >= str(value))
        return self

    def contains(self, column, values):
        self.filters.append(lambda row: all(v in (row.get(column) or []) for v in values))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def _matching(self):
        return [row for row in self.db.tables[self.table] if all(f(row) for f in self.filters)]

    def execute(self):
        if self.db.fail_tables.get(self.table) == self.op:
            raise RuntimeError(f"simulated {self.op} failure on {self.table}")

        if self.op == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.db.insert(self.table, row) for row in rows]
            return FakeResult(copy.deepcopy(inserted))

        matching = self._matching()

        if self.op == "update":
            for row in matching:
                row.update(copy.deepcopy(self.payload))
            return FakeResult(copy.deepcopy(matching))

        if self.op == "delete":
            for row in matching:
                self.db.tables[self.table].remove(row)
            return FakeResult(copy.deepcopy(matching))

        rows = matching
        if self.order_by:
            column, desc = self.order_by
            rows = sorted(rows, key=lambda r: str(r.get(column) or ""), reverse=desc)
        if self.row_limit is not None:
            rows = rows[:self.row_limit]
        count = len(matching) if self.count_mode == "exact" else None
        return FakeResult(copy.deepcopy(rows), count)


class FakeRpc:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        handler = getattr(self.db, f"rpc_{self.name}")
        return FakeResult(handler(**self.params))


class FakeSupabase:
    """In-memory stand-in for the Supabase client, including the SQL functions."""

    def __init__(self):
        self.tables = {name: [] for name in TABLE_DEFAULTS}
        self.fail_tables = {}
        self._seq = 0

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    def insert(self, table, row):
        self._seq += 1
        stored = copy.deepcopy(TABLE_DEFAULTS[table])
        stored.update({
            "id": str(uuid.uuid4()),
            "created_at": f"2026-01-01T00:00:00.{self._seq:06d}+00:00",
        })
        stored.update(copy.deepcopy(row))
        self.tables[table].append(stored)
        return stored

    def row(self, table, row_id):
        return next(r for r in self.tables[table] if r["id"] == row_id)

    # SQL functions from database/migrations

    def _activate(self, table, row_id, restaurant_id, limit, live, draft, changes):
        live_count = len([
            r for r in self.tables[table]
            if r["restaurant_id"] == restaurant_id and live(r) and r.get("deleted_at") is None
        ])
        if limit is not None and live_count >= limit:
            return False
        for r in self.tables[table]:
            if r["id"] == row_id and r["restaurant_id"] == restaurant_id and draft(r) and r.get("deleted_at") is None:
                r.update(changes)
                return True
        return False

    def rpc_activate_loyalty_card(self, p_card_id, p_restaurant_id, p_limit, p_qr_code):
        return self._activate(
            "loyalty_cards", p_card_id, p_restaurant_id, p_limit,
            live=lambda r: r["is_active"],
            draft=lambda r: r["campaign_status"] == "draft",
            changes={
                "campaign_status": "live",
                "is_active": True,
                "discovery_qr_code": p_qr_code,
                "campaign_start_date": datetime.now(timezone.utc).isoformat(),
            },
        )

    def rpc_activate_promotion(self, p_promotion_id, p_restaurant_id, p_limit):
        return self._activate(
            "promotions", p_promotion_id, p_restaurant_id, p_limit,
            live=lambda r: r["status"] == "active",
            draft=lambda r: r["status"] == "draft",
            changes={"status": "active"},
        )

    def rpc_activate_event(self, p_event_id, p_restaurant_id, p_limit):
        today = date.today().isoformat()
        return self._activate(
            "events", p_event_id, p_restaurant_id, p_limit,
            live=lambda r: r["status"] == "active" and str(r["event_date"]) >= today,
            draft=lambda r: r["status"] == "draft",
            changes={"status": "active"},
        )

    def rpc_record_notification_sent(self, p_restaurant_id, p_limit):
        restaurant = self.row("restaurants", p_restaurant_id)
        if p_limit is not None and restaurant["notifications_sent_this_month"] >= p_limit:
            return None
        restaurant["notifications_sent_this_month"] += 1
        return restaurant["notifications_sent_this_month"]

    def rpc_release_notification_sent(self, p_restaurant_id):
        restaurant = self.row("restaurants", p_restaurant_id)
        restaurant["notifications_sent_this_month"] = max(restaurant["notifications_sent_this_month"] - 1, 0)
        return restaurant["notifications_sent_this_month"]

    def rpc_reset_notification_counter(self, p_restaurant_id, p_expected_last_reset, p_now):
        restaurant = self.row("restaurants", p_restaurant_id)
        if restaurant["last_notification_reset"] != p_expected_last_reset:
            return False
        restaurant["notifications_sent_this_month"] = 0
        restaurant["last_notification_reset"] = p_now
        return True


# ============================================
# Scripted Stripe
# ============================================

def make_subscription(
    subscription_id="sub_test123",
    price_id=None,
    period_end=1893456000,
    item_id="si_test123",
    status="active",
    cancel_at_period_end=False,
    customer="cus_test123",
):
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": period_end,
        "items": {"data": [{"id": item_id, "price": {"id": price_id or settings.stripe_price_basic_monthly}}]},
    }


class FakeStripe:
    """Records Stripe SDK calls and keeps subscription state between them."""

    def __init__(self):
        self.subscriptions = {}
        self.calls = []
        self.fail_modify = False

    def add_subscription(self, **kwargs):
        subscription = make_subscription(**kwargs)
        self.subscriptions[subscription["id"]] = subscription
        return subscription

    def retrieve(self, subscription_id, **params):
        self.calls.append(("retrieve", subscription_id, params))
        if subscription_id not in self.subscriptions:
            raise stripe.error.InvalidRequestError(
                f"No such subscription: '{subscription_id}'", "id", code="resource_missing"
            )
        return copy.deepcopy(self.subscriptions[subscription_id])

    def modify(self, subscription_id, **params):
        self.calls.append(("modify", subscription_id, params))
        if self.fail_modify:
            raise stripe.error.APIConnectionError("Network down")
        subscription = self.subscriptions[subscription_id]
        if "cancel_at_period_end" in params:
            subscription["cancel_at_period_end"] = params["cancel_at_period_end"]
        for change in params.get("items", []):
            for item in subscription["items"]["data"]:
                if item["id"] == change["id"]:
                    item["price"] = {"id": change["price"]}
        return copy.deepcopy(subscription)

    def create_subscription(self, **params):
        self.calls.append(("create_subscription", None, params))
        subscription = make_subscription(
            subscription_id=f"sub_{uuid.uuid4().hex[:12]}",
            price_id=params["items"][0]["price"],
            item_id=f"si_{uuid.uuid4().hex[:12]}",
            status="trialing",
            customer=params["customer"],
        )
        self.subscriptions[subscription["id"]] = subscription
        return copy.deepcopy(subscription)

    def create_customer(self, **params):
        self.calls.append(("create_customer", None, params))
        return {"id": "cus_created"}

    def create_checkout_session(self, **params):
        self.calls.append(("create_checkout_session", None, params))
        return {"id": "cs_test_abc", "url": "https://checkout.stripe.com/c/pay/cs_test_abc"}

    def create_portal_session(self, **params):
        self.calls.append(("create_portal_session", None, params))
        return {"id": "bps_test", "url": "https://billing.stripe.com/p/session/bps_test"}

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def fake_db(monkeypatch):
    """Route every repository call to an in-memory database."""
    db = FakeSupabase()
    monkeypatch.setattr(database.supabase_client, "get_supabase_client", lambda: db)
    return db


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.Subscription, "retrieve", fake.retrieve)
    monkeypatch.setattr(stripe.Subscription, "modify", fake.modify)
    monkeypatch.setattr(stripe.Subscription, "create", fake.create_subscription)
    monkeypatch.setattr(stripe.Customer, "create", fake.create_customer)
    monkeypatch.setattr(stripe.checkout.Session, "create", fake.create_checkout_session)
    monkeypatch.setattr(stripe.billing_portal.Session, "create", fake.create_portal_session)
    return fake


@pytest.fixture
def make_restaurant(fake_db):
    """Insert a restaurant row; keyword arguments override the defaults."""
    def factory(**overrides):
        row = {
            "name": "Chez Test",
            "slug": f"chez-{uuid.uuid4().hex[:6]}",
            "authorized_staff_emails": [STAFF["email"]],
        }
        row.update(overrides)
        return fake_db.insert("restaurants", row)
    return factory


@pytest.fixture
def auth():
    """Mutable holder for the authenticated user; defaults to the owner."""
    return {"user": dict(OWNER)}


@pytest.fixture
def app(fake_db, auth):
    application = create_app()
    application.dependency_overrides[require_auth] = lambda: auth["user"]
    get_billing_service.cache_clear()
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)
