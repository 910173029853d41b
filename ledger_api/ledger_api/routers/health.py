"""Health-check endpoint.

Always HTTP 200 so load balancers see the process as alive; the ``db``
field reports whether the billing store is reachable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from ledger_api import __version__
from ledger_api.dependencies import PublicSessionDep, SettingsDep
from ledger_core.billing.catalog import CATALOG_VERSION

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health with a database connectivity check."""
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "catalog_version": CATALOG_VERSION,
        "billing_enabled": settings.billing_enabled,
        "db": "ok",
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result
