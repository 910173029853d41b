"""SQLite adapter for local development and tests.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* ``set_tenant_context()`` is a no-op (no RLS).
* Advisory locks and ``FOR UPDATE`` are skipped; SQLite serialises writers
  itself, and balance updates are single-statement compare-and-swaps.
* JSONB columns fall back to SQLite's TEXT (JSON stored as strings).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
)


def get_local_engine(
    db_path: Path | str = ".fleetledger/billing.db",
    *,
    busy_timeout: float = 15.0,
) -> AsyncEngine:
    """Create an aiosqlite-backed engine for the billing tables.

    Parameters
    ----------
    db_path:
        Database file; missing parent directories are created.  ``:memory:``
        gives an ephemeral database held on a single shared connection so
        that the ledger and the webhook reconciler see the same rows.
    busy_timeout:
        Seconds a writer waits for a competing writer's lock.
    """
    engine_kwargs: dict[str, Any] = {}
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
        engine_kwargs["poolclass"] = StaticPool
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
        **engine_kwargs,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: Any, _record: Any) -> None:
        cursor = dbapi_conn.cursor()
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Local billing store: %s (busy_timeout=%.1fs)", url, busy_timeout)
    return engine


async def create_local_tables(engine: AsyncEngine, *, include_crud_tables: bool = False) -> None:
    """Create the billing tables, idempotently.

    ``include_crud_tables`` also creates stand-ins for the CRUD service's
    ``drivers`` and ``documents`` tables, for local dev and tests.
    """
    from ledger_core.state.tables import Base
    from ledger_core.state.usage import crud_metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if include_crud_tables:
            await conn.run_sync(crud_metadata.create_all)

    logger.info("SQLite tables created/verified")
