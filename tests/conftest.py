"""Shared test fixtures — single test DB, in-memory provider APIs, recording mailer."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from payledger.db.tables import Base, PricingPlanRow, UserRow
from payledger.db.engine import get_session
from payledger.payments.retry import RetryPolicy
from payledger.providers.creem import CreemClient
from payledger.providers.stripe import StripeClient
from payledger.services.notifications import Notifier

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


async def _no_sleep(delay: float) -> None:
    return None


def fast_retry_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0, sleep=_no_sleep)


# Import app and override BEFORE any test module imports app
from payledger.api.main import app  # noqa: E402
from payledger.api import deps  # noqa: E402

app.dependency_overrides[get_session] = override_get_session
app.dependency_overrides[deps.get_session_factory] = lambda: TestSession
app.dependency_overrides[deps.get_retry_policy] = lambda: fast_retry_policy()

# Patch the module-level engine and session factory to use our test engine
import payledger.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


# ── Seed data ─────────────────────────────────────────────────────────────────

TEST_USER_ID = "user-1"
TEST_CUSTOMER_ID = "cus_1"

TEST_PLANS = [
    dict(id="plan-credits-500", card_title="500 Credits", provider="stripe",
         stripe_price_id="price_onetime", payment_type="one_time", price="5",
         currency="usd", benefits_jsonb={"oneTimeCredits": 500}),
    dict(id="plan-monthly", card_title="Starter Monthly", provider="stripe",
         stripe_price_id="price_monthly", payment_type="recurring", recurring_interval="month",
         price="9.99", currency="usd", benefits_jsonb={"monthlyCredits": 300}),
    dict(id="plan-monthly-pro", card_title="Pro Monthly", provider="stripe",
         stripe_price_id="price_monthly_pro", payment_type="recurring", recurring_interval="month",
         price="29.99", currency="usd", benefits_jsonb={"monthlyCredits": 1000}),
    dict(id="plan-yearly", card_title="Starter Yearly", provider="stripe",
         stripe_price_id="price_yearly", payment_type="recurring", recurring_interval="year",
         price="99", currency="usd", benefits_jsonb={"monthlyCredits": 300, "totalMonths": 12}),
    dict(id="plan-creem-credits", card_title="500 Credits", provider="creem",
         creem_product_id="prod_creem_onetime", payment_type="onetime", price="5",
         currency="usd", benefits_jsonb={"oneTimeCredits": 500}),
    dict(id="plan-creem-monthly", card_title="Starter Monthly", provider="creem",
         creem_product_id="prod_creem_monthly", payment_type="recurring",
         recurring_interval="every-month", price="9.99", currency="usd",
         benefits_jsonb={"monthlyCredits": 300}),
]


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after. Seeds one user and the plan catalogue."""
    import payledger.db.billing_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSession() as session:
        session.add(UserRow(
            id=TEST_USER_ID,
            email="user@example.com",
            name="Test User",
            stripe_customer_id=TEST_CUSTOMER_ID,
        ))
        for plan in TEST_PLANS:
            session.add(PricingPlanRow(**plan))
        await session.commit()

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def webhook_secrets(monkeypatch):
    monkeypatch.setattr("payledger.api.webhooks.STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr("payledger.api.webhooks.CREEM_WEBHOOK_SECRET", "creem_whsec_test")


# ── In-memory provider APIs ───────────────────────────────────────────────────

def _not_found(resource: str, ident: str) -> httpx.Response:
    return httpx.Response(404, json={"error": {"message": f"No such {resource}: '{ident}'"}})


class FakeStripeAPI:
    """Just enough of the Stripe REST API, served through ``httpx.MockTransport``."""

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.charges: dict[str, dict] = {}
        self.checkout_sessions: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.canceled: list[str] = []
        self.requests: list[tuple[str, str]] = []
        self.fail = False
        self.client = StripeClient(
            api_key="sk_test_123",
            base_url="https://stripe.test/v1",
            transport=httpx.MockTransport(self.handle),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        self.requests.append((request.method, path))
        if self.fail:
            return httpx.Response(503, json={"error": {"message": "Stripe is unavailable"}})
        parts = path.strip("/").split("/")
        resource, ident = parts[0], "/".join(parts[1:])

        if resource == "subscriptions" and request.method == "DELETE":
            if ident not in self.subscriptions:
                return _not_found("subscription", ident)
            self.canceled.append(ident)
            self.subscriptions[ident]["status"] = "canceled"
            return httpx.Response(200, json=self.subscriptions[ident])

        if resource == "subscriptions" and not ident:
            customer = request.url.params.get("customer")
            data = [s for s in self.subscriptions.values() if s.get("customer") == customer]
            return httpx.Response(200, json={"object": "list", "data": data})

        if resource == "refunds" and request.method == "POST":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            refund = {"id": f"re_{len(self.refunds) + 1}", "object": "refund", **form}
            self.refunds.append(refund)
            return httpx.Response(200, json=refund)

        if resource == "checkout" and parts[1:2] == ["sessions"]:
            session_id = "/".join(parts[2:])
            if session_id not in self.checkout_sessions:
                return _not_found("checkout.session", session_id)
            return httpx.Response(200, json=self.checkout_sessions[session_id])

        store = {
            "subscriptions": ("subscription", self.subscriptions),
            "customers": ("customer", self.customers),
            "invoices": ("invoice", self.invoices),
            "charges": ("charge", self.charges),
        }.get(resource)
        if store is None:
            return httpx.Response(400, json={"error": {"message": f"Unrecognized request URL {path}"}})
        name, objects = store
        if ident not in objects:
            return _not_found(name, ident)
        return httpx.Response(200, json=objects[ident])

    # ── Builders ──────────────────────────────────────────────────────────────

    def add_customer(self, customer_id: str = TEST_CUSTOMER_ID, metadata: dict | None = None) -> dict:
        customer = {"id": customer_id, "object": "customer", "metadata": metadata or {}}
        self.customers[customer_id] = customer
        return customer

    def add_subscription(
        self,
        subscription_id: str = "sub_1",
        price_id: str = "price_monthly",
        customer_id: str = TEST_CUSTOMER_ID,
        status: str = "active",
        metadata: dict | None = None,
        period_start: int = 1767225600,  # 2026-01-01T00:00:00Z
    ) -> dict:
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "ended_at": None,
            "items": {"data": [{
                "price": {"id": price_id, "product": f"prod_for_{price_id}"},
                "current_period_start": period_start,
                "current_period_end": period_start + 31 * 86400,
            }]},
            "metadata": metadata if metadata is not None else {"userId": TEST_USER_ID},
        }
        self.subscriptions[subscription_id] = subscription
        return subscription

    def add_invoice(self, invoice_id: str = "in_1", payment_intent: str | None = "pi_sub_1") -> dict:
        payments = [{"payment": {"payment_intent": payment_intent}}] if payment_intent else []
        invoice = {"id": invoice_id, "object": "invoice", "payments": {"data": payments}}
        self.invoices[invoice_id] = invoice
        return invoice

    def add_charge(self, charge_id: str = "ch_1", **fields) -> dict:
        charge = {
            "id": charge_id,
            "object": "charge",
            "amount": 500,
            "currency": "usd",
            "customer": TEST_CUSTOMER_ID,
            "description": "Credits purchase",
            "refunded": False,
            "billing_details": {"email": "user@example.com"},
            **fields,
        }
        self.charges[charge_id] = charge
        return charge

    def add_checkout_session(self, session_id: str = "cs_1", **fields) -> dict:
        checkout = {
            "id": session_id,
            "object": "checkout.session",
            "mode": "payment",
            "status": "complete",
            "payment_status": "paid",
            "payment_intent": "pi_1",
            "subscription": None,
            "metadata": {"userId": TEST_USER_ID, "planId": "plan-credits-500", "priceId": "price_onetime"},
            **fields,
        }
        self.checkout_sessions[session_id] = checkout
        return checkout


class FakeCreemAPI:
    """Creem's query-string REST API, served through ``httpx.MockTransport``."""

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.checkouts: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.client = CreemClient(
            api_key="creem_test_123",
            base_url="https://creem.test/v1",
            transport=httpx.MockTransport(self.handle),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        self.requests.append((request.method, path))
        params = request.url.params
        lookups = {
            "/subscriptions": ("subscription_id", self.subscriptions),
            "/checkouts": ("checkout_id", self.checkouts),
            "/customers": ("customer_id", self.customers),
            "/products": ("product_id", self.products),
        }
        if path not in lookups:
            return httpx.Response(400, json={"message": [f"Cannot {request.method} {path}"]})
        key, objects = lookups[path]
        ident = params.get(key)
        if ident not in objects:
            return httpx.Response(404, json={"message": f"{path.strip('/')[:-1].title()} not found"})
        return httpx.Response(200, json=objects[ident])

    def add_subscription(
        self,
        subscription_id: str = "sub_creem_1",
        product_id: str = "prod_creem_monthly",
        customer_id: str = "cust_creem_1",
        status: str = "active",
        metadata: dict | None = None,
    ) -> dict:
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "product": {"id": product_id, "billing_type": "recurring"},
            "customer": {"id": customer_id, "email": "user@example.com"},
            "status": status,
            "items": [{"id": "item_1", "price_id": f"pprice_{product_id}"}],
            "current_period_start_date": "2026-01-01T00:00:00.000Z",
            "current_period_end_date": "2026-02-01T00:00:00.000Z",
            "canceled_at": None,
            "metadata": metadata if metadata is not None else {"userId": TEST_USER_ID},
        }
        self.subscriptions[subscription_id] = subscription
        return subscription

    def add_checkout(self, checkout_id: str = "ch_creem_1", **fields) -> dict:
        checkout = {
            "id": checkout_id,
            "object": "checkout",
            "status": "completed",
            "order": {"id": "ord_creem_1", "status": "paid", "type": "onetime"},
            "subscription": None,
            "metadata": {"userId": TEST_USER_ID, "planId": "plan-creem-credits"},
            **fields,
        }
        self.checkouts[checkout_id] = checkout
        return checkout


class RecordingMailer:
    """Email HTTP API stand-in; keeps every message posted to it."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False
        self.notifier = Notifier(
            api_url="https://mail.test/send",
            api_key="mail_key",
            sender="billing@example.com",
            admin_email="ops@example.com",
            support_email="support@example.com",
            transport=httpx.MockTransport(self.handle),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(503, json={"message": "mail service unavailable"})
        self.sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": f"msg_{len(self.sent)}"})

    def subjects(self) -> list[str]:
        return [m["subject"] for m in self.sent]

    def recipients(self) -> list[str]:
        return [m["to"][0] for m in self.sent]


@pytest.fixture
def stripe_api():
    api = FakeStripeAPI()
    app.dependency_overrides[deps.get_stripe_client] = lambda: api.client
    yield api
    app.dependency_overrides.pop(deps.get_stripe_client, None)


@pytest.fixture
def creem_api():
    api = FakeCreemAPI()
    app.dependency_overrides[deps.get_creem_client] = lambda: api.client
    yield api
    app.dependency_overrides.pop(deps.get_creem_client, None)


@pytest.fixture
def mailer():
    recorder = RecordingMailer()
    app.dependency_overrides[deps.get_notifier] = lambda: recorder.notifier
    yield recorder
    app.dependency_overrides.pop(deps.get_notifier, None)


@pytest.fixture
def billing_services(stripe_api, creem_api, mailer):
    """BillingServices wired to the test DB, as the webhook endpoints build it."""
    return deps.get_billing_services(
        session_factory=TestSession,
        notifier=mailer.notifier,
        retry=fast_retry_policy(),
    )


@pytest.fixture
def credits(billing_services):
    return billing_services.credits


@pytest_asyncio.fixture
async def client(stripe_api, creem_api, mailer):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
