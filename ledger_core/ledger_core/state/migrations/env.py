"""Alembic environment configuration for the billing state store.

Supports both **online** (connected) and **offline** (SQL-generation) modes.
The database URL is resolved from the ``ALEMBIC_DATABASE_URL`` environment
variable, falling back to the ledger settings (``LEDGER_DATABASE_URL``,
``.env`` or the local development default).

``target_metadata`` is bound to ``Base.metadata`` only and the CRUD service's
``drivers`` and ``documents`` tables are migrated by that service.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from ledger_core.config import load_settings
from ledger_core.state.tables import Base
from sqlalchemy import engine_from_config, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


# Async driver prefix -> synchronous driver prefix used for migrations.
_SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "postgresql://": "postgresql+psycopg://",
    "sqlite+aiosqlite://": "sqlite://",
}

# Owned by the CRUD service; never autogenerate DDL for them here.
_FOREIGN_TABLES = frozenset({"drivers", "documents"})


def _get_database_url() -> str:
    """Resolve the database URL and normalise it to a synchronous driver."""
    url = os.environ.get("ALEMBIC_DATABASE_URL") or load_settings().database_url
    logger.info("Migrating billing store at %s", url.split("@")[-1])

    for async_prefix, sync_prefix in _SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            url = sync_prefix + url[len(async_prefix) :]
            break
    # asyncpg spells it ``ssl``, libpq spells it ``sslmode``.
    return url.replace("ssl=require", "sslmode=require")


def _include_object(obj: object, name: str | None, type_: str, reflected: bool, compare_to: object) -> bool:
    return not (type_ == "table" and name in _FOREIGN_TABLES)


def run_migrations_offline() -> None:
    """Emit migration SQL without a live database."""
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        include_object=_include_object,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run each revision inside a transaction on a live connection."""
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _get_database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    try:
        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                include_object=_include_object,
                compare_type=True,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
