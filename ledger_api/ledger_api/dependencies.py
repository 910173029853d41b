"""FastAPI dependency injection for settings, database sessions and the payment gateway.

Process-wide resources (engine, session factory, Stripe client wrapper)
live on a single :class:`_Runtime` holder populated during the
application lifespan.  Tests replace them through
``app.dependency_overrides`` rather than by touching the holder.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_api.config import APISettings, load_api_settings
from ledger_api.services.stripe_gateway import StripeGateway
from ledger_core.config import load_settings
from ledger_core.state.database import get_engine, set_tenant_context

logger = logging.getLogger(__name__)


@dataclass
class _Runtime:
    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None
    gateway: StripeGateway | None = None


_runtime = _Runtime()

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_settings() -> APISettings:
    """Settings are read from the environment once per process."""
    return load_api_settings()


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Engine lifecycle
# ---------------------------------------------------------------------------


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create the billing store engine and its session factory."""
    pool = load_settings()
    engine = get_engine(
        settings.database_url,
        pool_size=pool.database_pool_size,
        max_overflow=pool.database_max_overflow,
    )
    _runtime.engine = engine
    _runtime.session_factory = async_sessionmaker(engine, expire_on_commit=False)
    return engine


async def dispose_engine() -> None:
    """Close pooled connections on shutdown; safe to call twice."""
    engine, _runtime.engine, _runtime.session_factory = _runtime.engine, None, None
    if engine is not None:
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for components that own their transactions.

    The webhook reconciler journals each event in its own transaction and
    the downgrade sweep opens one per tenant, so neither can share the
    request-scoped session below.
    """
    if _runtime.session_factory is None:
        raise RuntimeError("Billing store not initialised; init_engine() must run during startup")
    return _runtime.session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Caller identity (set on request.state by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    tenant_id: str | None = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


def get_user_identity(request: Request) -> str:
    """User who initiated the call, recorded on scheduled downgrades."""
    return getattr(request.state, "sub", None) or "anonymous"


TenantDep = Annotated[str, Depends(get_tenant_id)]
UserDep = Annotated[str, Depends(get_user_identity)]

# ---------------------------------------------------------------------------
# Request-scoped sessions
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _scoped_session(
    factory: async_sessionmaker[AsyncSession], tenant_id: str | None
) -> AsyncIterator[AsyncSession]:
    # One transaction per request: commit on clean exit, roll back on any
    # exception so a BillingError raised mid-route leaves no partial write.
    session = factory()
    try:
        if tenant_id is not None:
            await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db_session(factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Session **without** tenant RLS context, for health probes and the plan catalog."""
    async with _scoped_session(factory, None) as session:
        yield session


async def get_tenant_session(request: Request, factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the caller's tenant."""
    async with _scoped_session(factory, get_tenant_id(request)) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# Not tenant-scoped: never use for ledger reads or writes.
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


def get_gateway(settings: SettingsDep) -> StripeGateway:
    """The Stripe wrapper, built on first use from the active settings."""
    if _runtime.gateway is None:
        _runtime.gateway = StripeGateway(settings)
        logger.debug("Payment gateway initialised")
    return _runtime.gateway


GatewayDep = Annotated[StripeGateway, Depends(get_gateway)]
