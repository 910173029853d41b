"""Async SQLAlchemy engine creation and tenant context.

Supports both PostgreSQL (production) and SQLite (local dev and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → SQLite engine with WAL enabled
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

logger = logging.getLogger(__name__)

# Tenant IDs are alphanumeric plus hyphens and underscores, 1-64 chars.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def validate_tenant_id(tenant_id: str) -> str:
    """Return *tenant_id* unchanged, or raise ``ValueError`` if malformed."""
    if not _TENANT_ID_RE.match(tenant_id or ""):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")
    return tenant_id


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if database_url.startswith("sqlite"):
        from ledger_core.config import load_settings
        from ledger_core.state.sqlite_adapter import get_local_engine

        core = load_settings()
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ""
        return get_local_engine(db_path or core.local_db_path, busy_timeout=core.sqlite_busy_timeout)

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",  # 30 s
                "lock_timeout": "10000",  # 10 s
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Bind *tenant_id* for row-level security on PostgreSQL.

    Uses ``set_config(..., true)`` so the value is scoped to the current
    transaction.  No-op on SQLite, which has no RLS.
    """
    dialect_name = getattr(getattr(session.get_bind(), "dialect", None), "name", "")
    if "sqlite" in str(dialect_name):
        return

    validate_tenant_id(tenant_id)
    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )
