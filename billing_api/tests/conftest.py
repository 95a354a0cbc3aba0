"""Shared fixtures for billing API tests.

Provides a file-backed SQLite state store, the billing service wired to a
recording mailer and a fake line-item source, webhook payload factories
with real signatures, and a FastAPI client with dependency overrides.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from billing_core.catalog.features import FeatureMap
from billing_core.catalog.plans import PlanCatalog, build_default_catalog
from billing_core.catalog.resolver import PlanResolver
from billing_core.events.models import BillingEvent, LineItem
from billing_core.events.verifier import classify_payload
from billing_core.state.repository import SubscriptionRepository, TenantMemberRepository, UserRepository
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.dependencies import get_billing_service, get_db_session, get_settings
from billing_api.main import create_app
from billing_api.services.billing_service import BillingService
from billing_api.services.email_templates import EmailRenderer
from billing_api.services.mailer import LoggingMailer
from billing_api.services.side_effects import SideEffectDispatcher

WEBHOOK_SECRET = "whsec_test_billing"
ADMIN_TOKEN = "admin-test-token"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        billing_enabled=True,
        stripe_secret_key="sk_test_xxx",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id_hobby="price_hobby",
        stripe_price_id_pro="price_pro",
        stripe_price_id_credits="price_credits",
        credits_pack_amount=10,
        admin_api_token=ADMIN_TOKEN,
        web_client_url="https://app.example.com",
    )


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the full schema.

    A file (rather than ``:memory:``) lets concurrent sessions each hold
    their own connection.
    """
    db_engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
def seed_tenant(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    """Return a coroutine that creates a linked tenant with members.

    ``members`` is a list of ``(user_id, email, role)`` tuples; users are
    created on first use.
    """

    async def _seed(
        tenant_id: str,
        external_ref: str | None = None,
        members: list[tuple[str, str, str]] | None = None,
    ) -> None:
        async with session_factory() as session:
            await SubscriptionRepository(session).create(tenant_id, external_ref=external_ref)
            users = UserRepository(session)
            memberships = TenantMemberRepository(session)
            for user_id, email, role in members or []:
                if await users.get(user_id) is None:
                    await users.create(email=email, user_id=user_id)
                await memberships.add(tenant_id=tenant_id, user_id=user_id, role=role)
            await session.commit()

    return _seed


# ---------------------------------------------------------------------------
# Billing wiring
# ---------------------------------------------------------------------------


class FakeLineItemSource:
    """Line-item source returning canned items per checkout session."""

    def __init__(self, items: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.items = items or {}
        self.calls: list[str] = []

    async def fetch(self, session_id: str) -> list[LineItem]:
        self.calls.append(session_id)
        return [LineItem.model_validate(item) for item in self.items.get(session_id, [])]


@pytest.fixture()
def catalog() -> PlanCatalog:
    return build_default_catalog(
        hobby_price_id="price_hobby",
        pro_price_id="price_pro",
        credits_price_id="price_credits",
        credits_amount=10,
    )


@pytest.fixture()
def feature_map() -> FeatureMap:
    return FeatureMap()


@pytest.fixture()
def mailer() -> LoggingMailer:
    return LoggingMailer()


@pytest.fixture()
def renderer() -> EmailRenderer:
    return EmailRenderer(web_client_url="https://app.example.com")


@pytest.fixture()
def line_items() -> FakeLineItemSource:
    return FakeLineItemSource()


@pytest.fixture()
def dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    mailer: LoggingMailer,
    renderer: EmailRenderer,
) -> SideEffectDispatcher:
    return SideEffectDispatcher(session_factory, mailer=mailer, renderer=renderer)


@pytest.fixture()
def billing_service(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    feature_map: FeatureMap,
    dispatcher: SideEffectDispatcher,
    line_items: FakeLineItemSource,
) -> BillingService:
    return BillingService(session_factory, PlanResolver(catalog), feature_map, dispatcher, line_items)


# ---------------------------------------------------------------------------
# Webhook payload factories
# ---------------------------------------------------------------------------


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header for *payload*."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _payload(event_type: str, obj: dict[str, Any], event_id: str) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    ).encode("utf-8")


def _invoice(customer: str, price_id: str, invoice_id: str) -> dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_1",
        "billing_reason": "subscription_cycle",
        "period_start": 1_735_689_600,
        "hosted_invoice_url": f"https://invoice.stripe.com/i/{invoice_id}",
        "amount_due": 2900,
        "currency": "usd",
        "lines": {"object": "list", "data": [{"id": "il_1", "price": {"id": price_id}}]},
    }


def _subscription(customer: str, price_id: str, status: str, cancel_at_period_end: bool) -> dict[str, Any]:
    return {
        "id": "sub_1",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": 1_738_368_000,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


class EventFactory:
    """Build raw payloads and decoded events for the handled event kinds."""

    def __init__(self) -> None:
        self._counter = 0

    def _next_id(self, event_id: str | None) -> str:
        self._counter += 1
        return event_id or f"evt_test_{self._counter}"

    def invoice_paid(self, customer: str, price_id: str = "price_pro", *, event_id: str | None = None) -> bytes:
        eid = self._next_id(event_id)
        return _payload("invoice.paid", _invoice(customer, price_id, f"in_{eid}"), eid)

    def invoice_payment_failed(
        self, customer: str, price_id: str = "price_pro", *, event_id: str | None = None
    ) -> bytes:
        eid = self._next_id(event_id)
        return _payload("invoice.payment_failed", _invoice(customer, price_id, f"in_{eid}"), eid)

    def subscription_updated(
        self,
        customer: str,
        price_id: str = "price_pro",
        *,
        status: str = "active",
        cancel_at_period_end: bool = False,
        event_id: str | None = None,
    ) -> bytes:
        eid = self._next_id(event_id)
        return _payload(
            "customer.subscription.updated",
            _subscription(customer, price_id, status, cancel_at_period_end),
            eid,
        )

    def subscription_deleted(
        self, customer: str, price_id: str = "price_pro", *, event_id: str | None = None
    ) -> bytes:
        eid = self._next_id(event_id)
        return _payload(
            "customer.subscription.deleted",
            _subscription(customer, price_id, "canceled", False),
            eid,
        )

    def checkout_completed(
        self,
        customer: str | None,
        *,
        tenant_id: str | None = None,
        mode: str = "subscription",
        payment_status: str = "paid",
        session_id: str = "cs_test_1",
        line_items: list[dict[str, Any]] | None = None,
        event_id: str | None = None,
    ) -> bytes:
        eid = self._next_id(event_id)
        obj: dict[str, Any] = {
            "id": session_id,
            "object": "checkout.session",
            "customer": customer,
            "mode": mode,
            "payment_status": payment_status,
            "client_reference_id": tenant_id,
            "metadata": {},
        }
        if line_items is not None:
            obj["line_items"] = {"object": "list", "data": line_items}
        return _payload("checkout.session.completed", obj, eid)

    @staticmethod
    def decode(payload: bytes) -> BillingEvent:
        return classify_payload(payload)


@pytest.fixture()
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture()
def sign() -> Callable[..., str]:
    """Return :func:`sign_payload` for tests that post raw webhook bodies."""
    return sign_payload


# ---------------------------------------------------------------------------
# FastAPI client (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    billing_service: BillingService,
):
    """Create a FastAPI app wired to the test state store and billing service."""
    application = create_app()

    async def _override_session():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_billing_service] = lambda: billing_service
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
