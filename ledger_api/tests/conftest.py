"""Shared fixtures for billing API tests.

The app runs against a file-backed SQLite database through
``ASGITransport`` (which does not run the lifespan), with settings, the
session factory and the Stripe gateway injected via dependency overrides.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from ledger_api.config import APISettings
from ledger_api.dependencies import get_gateway, get_session_factory, get_settings
from ledger_api.main import create_app
from ledger_api.services.stripe_gateway import StripeGateway
from ledger_core.billing.ledger import provision_tenant
from ledger_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TENANT = "acme-logistics"
WEBHOOK_SECRET = "whsec_test_secret"
AUTH_HEADERS: dict[str, str] = {"X-Tenant-ID": TENANT, "X-User-ID": "dispatcher-1"}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "billing.db", busy_timeout=30.0)
    await create_local_tables(engine, include_crud_tables=True)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def provisioned(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """The default tenant on Free with 5 credits."""
    async with session_factory() as session:
        await provision_tenant(session, TENANT)
        await session.commit()
    return TENANT


# ---------------------------------------------------------------------------
# Settings and gateway
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> APISettings:
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite:///unused.db",
        "platform_env": "dev",
        "billing_enabled": True,
        "stripe_secret_key": "sk_test_xxx",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_max_retries": 1,
        "stripe_retry_base_delay": 0.01,
        "stripe_timeout_seconds": 0.2,
        "frontend_url": "https://app.example.test",
        "downgrade_sweep_enabled": False,
    }
    values.update(overrides)
    return APISettings(**values)


@pytest.fixture()
def test_settings() -> APISettings:
    return make_settings()


@pytest.fixture()
def gateway(test_settings: APISettings) -> MagicMock:
    """A Stripe gateway whose outbound calls are mocked and whose webhook
    verification is real."""
    real = StripeGateway(test_settings)
    mock = MagicMock(spec=StripeGateway)
    mock.create_customer = AsyncMock(return_value="cus_test_1")
    mock.retrieve_customer = AsyncMock(return_value={"id": "cus_test_1"})
    mock.create_checkout_session = AsyncMock(
        return_value={"session_id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
    )
    mock.create_portal_session = AsyncMock(return_value="https://billing.stripe.test/portal")
    mock.verify_webhook = MagicMock(side_effect=real.verify_webhook)
    return mock


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory: async_sessionmaker[AsyncSession], gateway: MagicMock) -> Any:
    app = create_app(test_settings)
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    return app


@pytest_asyncio.fixture()
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


# ---------------------------------------------------------------------------
# Stripe webhook helpers
# ---------------------------------------------------------------------------


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict[str, Any], event_id: str | None = None) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


@pytest.fixture()
def signed() -> Callable[[dict[str, Any]], tuple[bytes, str]]:
    """Serialise an event and sign it with the test webhook secret."""

    def _signed(event: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        payload = json.dumps(event).encode("utf-8")
        return payload, sign_payload(payload, secret)

    return _signed


@pytest.fixture()
def event_factory() -> Callable[..., dict[str, Any]]:
    return make_event


@pytest.fixture()
def checkout_completed() -> Callable[..., dict[str, Any]]:
    """Build a ``checkout.session.completed`` event for a plan upgrade."""

    def _build(
        plan: str = "Starter",
        *,
        tenant_id: str = TENANT,
        session_id: str = "cs_test_1",
        customer: str = "cus_test_1",
        event_id: str | None = None,
        payment_status: str = "paid",
    ) -> dict[str, Any]:
        return make_event(
            "checkout.session.completed",
            {
                "id": session_id,
                "object": "checkout.session",
                "mode": "subscription",
                "customer": customer,
                "subscription": "sub_test_1",
                "invoice": f"in_{session_id}",
                "client_reference_id": tenant_id,
                "payment_status": payment_status,
                "amount_total": 4900,
                "metadata": {"tenant_id": tenant_id, "plan_name": plan, "billing_cycle": "monthly"},
            },
            event_id=event_id,
        )

    return _build


@pytest.fixture()
def add_drivers(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[str, int], Awaitable[None]]:
    from ledger_core.state.usage import drivers_table
    from sqlalchemy import insert

    async def _add(tenant_id: str, count: int) -> None:
        async with session_factory() as session:
            await session.execute(
                insert(drivers_table),
                [{"id": f"drv-{uuid.uuid4().hex[:12]}", "tenant_id": tenant_id} for _ in range(count)],
            )
            await session.commit()

    return _add
