"""Shared fixtures for ledger core tests.

Every test gets its own file-backed SQLite database with the billing
tables plus the CRUD service's ``drivers`` and ``documents`` stand-ins.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from ledger_core.billing.catalog import PlanName
from ledger_core.billing.ledger import provision_tenant
from ledger_core.billing.state_machine import PlanStateMachine
from ledger_core.state.sqlite_adapter import create_local_tables, get_local_engine
from ledger_core.state.usage import documents_table, drivers_table
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TENANT = "acme-logistics"


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
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def free_tenant(session: AsyncSession) -> str:
    """A tenant provisioned on Free with the initial 5 credits, committed."""
    await provision_tenant(session, TENANT)
    await session.commit()
    return TENANT


@pytest.fixture()
def on_plan(session: AsyncSession, free_tenant: str) -> Callable[[PlanName], Awaitable[str]]:
    """Move the provisioned tenant onto a paid plan through a regular upgrade."""

    async def _upgrade(plan: PlanName) -> str:
        await PlanStateMachine(session, free_tenant).upgrade(plan, customer_ref="cus_acme")
        await session.commit()
        return free_tenant

    return _upgrade


_ids = itertools.count(1)


@pytest.fixture()
def add_drivers(session: AsyncSession) -> Callable[..., Awaitable[list[str]]]:
    """Insert drivers (each with *documents* documents) for a tenant."""

    async def _add(tenant_id: str, count: int, *, documents: int = 0) -> list[str]:
        driver_ids = [f"drv-{next(_ids)}" for _ in range(count)]
        if not driver_ids:
            return []
        await session.execute(
            insert(drivers_table),
            [{"id": driver_id, "tenant_id": tenant_id} for driver_id in driver_ids],
        )
        doc_rows = [
            {"id": f"doc-{next(_ids)}", "driver_id": driver_id, "page_count": 1}
            for driver_id in driver_ids
            for _ in range(documents)
        ]
        if doc_rows:
            await session.execute(insert(documents_table), doc_rows)
        await session.commit()
        return driver_ids

    return _add
