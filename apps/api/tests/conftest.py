"""
Pytest configuration for the usage billing API.
Environment must be set before any app import: settings are read at import time.
"""

import itertools
import json
import os
import tempfile
import time

_test_data_dir = tempfile.mkdtemp(prefix="usage_billing_test_")
os.environ["DATABASE_URL"] = f"sqlite:///{_test_data_dir}/test.db"
os.environ["DB_MIGRATIONS_ON_STARTUP"] = "0"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_PRICE_ACCESS"] = "price_access"
os.environ["STRIPE_TRIAL_DAYS"] = "7"
for _kind in ("script", "voice", "lipsync", "edit"):
    os.environ[f"STRIPE_PRICE_USAGE_{_kind.upper()}"] = f"price_{_kind}"
    os.environ[f"STRIPE_METER_EVENT_{_kind.upper()}"] = f"{_kind}_units"
os.environ["TRIAL_CREDIT_CENTS"] = "500"
os.environ["DAILY_CAP_CENTS"] = "15000"
os.environ["APP_URL"] = "https://app.example.com"
os.environ["RATE_LIMIT_PER_MIN"] = "100000"
os.environ["RATE_LIMIT_PER_DAY"] = "1000000"

import pytest
from fastapi.testclient import TestClient

from app.api.auth import CurrentUser, get_current_user
from app.core.config import settings
from app.core.exceptions import UpstreamError
from app.core.rate_limit import rate_limiter
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.main import app
from app.models.billing import UserAccount
from app.services.pricing import UsagePricing, price_catalog
from app.services.stripe_gateway import WebhookSignatureError, get_gateway

OWNER_ID = "user_1"
OWNER_EMAIL = "u1@example.com"
CUSTOMER_ID = "cus_1"
VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway:
    """In-memory stand-in for StripeGateway with the same method surface."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.invoices: list[dict] = []
        self.prices: dict[str, dict] = {
            f"price_{kind}": {"id": f"price_{kind}", "unit_amount": 100, "currency": "usd"}
            for kind in ("script", "voice", "lipsync", "edit")
        }
        self.meter_events: dict[str, dict] = {}
        self.meter_calls = 0
        self.price_lookups = 0
        self.checkout_sessions: list[dict] = []
        self.customer_updates: list[tuple[str, dict]] = []
        self.fail_meter = False
        self.fail_subscriptions = False

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    # ---- fixtures helpers -----------------------------------------------------

    def add_customer(self, customer_id: str = CUSTOMER_ID, **fields) -> dict:
        customer = {"id": customer_id, "email": OWNER_EMAIL, "invoice_settings": {}, **fields}
        self.customers[customer_id] = customer
        return customer

    def add_subscription(self, sub_id: str, *, customer_id: str = CUSTOMER_ID, status: str = "active",
                         price_ids=("price_access",), metadata=None, created=None) -> dict:
        sub = {
            "id": sub_id,
            "customer": customer_id,
            "status": status,
            "metadata": metadata or {},
            "created": created if created is not None else int(time.time()) - 86400,
            "items": {"data": [{"id": self._next("si"), "price": {"id": p}} for p in price_ids]},
        }
        self.subscriptions[sub_id] = sub
        return sub

    def add_invoice(self, **fields) -> dict:
        inv = {"id": self._next("in"), "customer": CUSTOMER_ID, **fields}
        self.invoices.insert(0, inv)
        return inv

    # ---- StripeGateway surface --------------------------------------------------

    def list_subscriptions(self, customer_id):
        if self.fail_subscriptions:
            raise UpstreamError("Stripe unavailable")
        return [s for s in self.subscriptions.values() if s["customer"] == customer_id]

    def retrieve_subscription(self, subscription_id, *, expand_prices=False):
        return self.subscriptions[subscription_id]

    def create_subscription(self, *, customer_id, price_ids, metadata):
        return self.add_subscription(self._next("sub"), customer_id=customer_id, price_ids=price_ids,
                                     metadata=dict(metadata))

    def add_subscription_item(self, subscription_id, price_id):
        item = {"id": self._next("si"), "price": {"id": price_id}}
        self.subscriptions[subscription_id]["items"]["data"].append(item)
        return item

    def list_invoices(self, customer_id, *, subscription_id=None, limit=5):
        rows = [i for i in self.invoices if i["customer"] == customer_id]
        if subscription_id:
            rows = [i for i in rows if i.get("subscription") == subscription_id]
        return rows[:limit]

    def retrieve_price(self, price_id):
        self.price_lookups += 1
        return self.prices[price_id]

    def retrieve_customer(self, customer_id):
        return self.customers.get(customer_id)

    def create_customer(self, *, owner_id, email=None):
        return self.add_customer(self._next("cus"), email=email, metadata={"uid": owner_id})

    def update_customer(self, customer_id, **params):
        self.customer_updates.append((customer_id, params))
        return self.customers.get(customer_id, {"id": customer_id})

    def create_checkout_session(self, **params):
        self.checkout_sessions.append(params)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    def create_portal_url(self, customer_id, return_url=None):
        return f"https://billing.stripe.test/p/{customer_id}"

    def report_meter_event(self, *, event_name, customer_id, value, token):
        self.meter_calls += 1
        if self.fail_meter:
            raise UpstreamError("Stripe metered billing not available")
        # Stripe drops a repeated identifier
        self.meter_events.setdefault(token.key, {
            "event_name": event_name,
            "customer_id": customer_id,
            "value": value,
        })
        return token.key

    def construct_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(engine)
    rate_limiter.reset()
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    price_catalog.clear()
    yield FakeGateway()
    price_catalog.clear()


@pytest.fixture
def pricing():
    return UsagePricing.from_settings(settings)


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_current_user] = lambda: CurrentUser(id=OWNER_ID, email=OWNER_EMAIL)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_account(db, gateway):
    """Create a ledger row with a payer and an access subscription in the given status."""

    def _make(*, status="active", trial_credit=0, granted=True, pending=0, customer=True, **fields):
        acct = UserAccount(
            owner_id=OWNER_ID,
            email=OWNER_EMAIL,
            stripe_customer_id=CUSTOMER_ID if customer else None,
            subscription_id="sub_access" if customer else None,
            plan="access",
            subscription_status=status,
            subscription_active=status in ("active", "trialing"),
            trial_credit_cents=trial_credit,
            trial_credit_ever_granted=granted,
            pending_local_cents=pending,
            **fields,
        )
        db.add(acct)
        db.commit()
        if customer:
            gateway.add_customer()
            gateway.add_subscription("sub_access", status=status, metadata={"uid": OWNER_ID, "plan": "access"})
        return acct

    return _make


def reload_account(db, owner_id: str = OWNER_ID) -> UserAccount:
    db.expire_all()
    return db.get(UserAccount, owner_id)


def post_event(client, event: dict, signature: str = VALID_SIGNATURE):
    return client.post(
        "/api/webhook/stripe",
        content=json.dumps(event),
        headers={"stripe-signature": signature, "content-type": "application/json"},
    )
