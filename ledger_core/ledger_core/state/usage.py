"""Read-only access to resource counts owned by the fleet CRUD service.

The ``drivers`` and ``documents`` tables belong to the CRUD service and
are migrated there.  They are declared on a separate ``MetaData`` so that
``Base.metadata.create_all`` never touches them; tests and local dev
create them explicitly via :data:`crud_metadata`.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.billing.catalog import ResourceUsage

crud_metadata = MetaData()

drivers_table = Table(
    "drivers",
    crud_metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
)

documents_table = Table(
    "documents",
    crud_metadata,
    Column("id", String(64), primary_key=True),
    Column("driver_id", String(64), ForeignKey("drivers.id"), nullable=False, index=True),
    Column("page_count", Integer, nullable=True),
)


class ResourceUsageSource(Protocol):
    """Anything able to report a tenant's capped resource usage."""

    async def usage(self, tenant_id: str) -> ResourceUsage: ...

    async def count_drivers(self, tenant_id: str) -> int: ...

    async def count_documents_for_driver(self, tenant_id: str, driver_id: str) -> int | None: ...

    async def count_documents(self, tenant_id: str) -> int: ...


class SqlResourceUsageSource:
    """Query driver and document counts straight from the CRUD tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def count_drivers(self, tenant_id: str) -> int:
        stmt = select(func.count()).select_from(drivers_table).where(drivers_table.c.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def count_documents(self, tenant_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(documents_table.join(drivers_table, documents_table.c.driver_id == drivers_table.c.id))
            .where(drivers_table.c.tenant_id == tenant_id)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def count_documents_for_driver(self, tenant_id: str, driver_id: str) -> int | None:
        """Return the driver's document count, or ``None`` if the driver is not the tenant's."""
        owner = await self._session.execute(
            select(drivers_table.c.id).where(
                drivers_table.c.id == driver_id,
                drivers_table.c.tenant_id == tenant_id,
            )
        )
        if owner.scalar_one_or_none() is None:
            return None
        stmt = select(func.count()).select_from(documents_table).where(documents_table.c.driver_id == driver_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def max_documents_per_driver(self, tenant_id: str) -> int:
        per_driver = (
            select(func.count(documents_table.c.id).label("doc_count"))
            .select_from(drivers_table.outerjoin(documents_table, documents_table.c.driver_id == drivers_table.c.id))
            .where(drivers_table.c.tenant_id == tenant_id)
            .group_by(drivers_table.c.id)
            .subquery()
        )
        result = await self._session.execute(select(func.max(per_driver.c.doc_count)))
        return int(result.scalar_one_or_none() or 0)

    async def usage(self, tenant_id: str) -> ResourceUsage:
        return ResourceUsage(
            drivers=await self.count_drivers(tenant_id),
            max_documents_per_driver=await self.max_documents_per_driver(tenant_id),
        )
