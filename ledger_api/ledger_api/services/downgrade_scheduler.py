"""Background sweep that executes pending downgrades once they are due.

Runs as an ``asyncio`` background task.  Every interval it lists tenants
whose pending downgrade is effective and executes each one in its own
session and transaction, so one failing tenant never blocks the rest.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_api.middleware.prometheus import DOWNGRADE_SWEEP_TOTAL
from ledger_core.billing.state_machine import PlanStateMachine
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import BillingDirectoryRepository

logger = logging.getLogger(__name__)


class SweepSummary(BaseModel):
    """Outcome of one sweep over due downgrades."""

    due: int = 0
    executed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class DowngradeScheduler:
    """AsyncIO background task for scheduled downgrade execution.

    Parameters
    ----------
    session_factory:
        Factory used to open one session per tenant.
    interval_seconds:
        Pause between sweeps.
    batch_size:
        Maximum tenants handled per sweep; the rest wait for the next one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: float = 3600.0,
        batch_size: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the sweep background task."""
        if self._running:
            logger.warning("DowngradeScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("DowngradeScheduler started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("DowngradeScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("DowngradeScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("DowngradeScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)

    async def run_once(self, now: datetime | None = None) -> SweepSummary:
        """Execute every downgrade due at *now* (defaults to the current time)."""
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            tenant_ids = await BillingDirectoryRepository(session).list_due_downgrades(now, limit=self._batch_size)

        summary = SweepSummary(due=len(tenant_ids))
        for tenant_id in tenant_ids:
            try:
                executed = await self._execute_one(tenant_id, now)
            except Exception:
                logger.exception("Downgrade execution failed for tenant=%s", tenant_id)
                DOWNGRADE_SWEEP_TOTAL.labels(outcome="failed").inc()
                summary.failed.append(tenant_id)
                continue
            outcome = "executed" if executed else "skipped"
            DOWNGRADE_SWEEP_TOTAL.labels(outcome=outcome).inc()
            (summary.executed if executed else summary.skipped).append(tenant_id)

        if tenant_ids:
            logger.info(
                "Downgrade sweep: %d due, %d executed, %d skipped, %d failed",
                summary.due,
                len(summary.executed),
                len(summary.skipped),
                len(summary.failed),
            )
        return summary

    async def _execute_one(self, tenant_id: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            try:
                await set_tenant_context(session, tenant_id)
                machine = PlanStateMachine(session, tenant_id, clock=lambda: now)
                result = await machine.execute_downgrade()
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        # None means the downgrade was cancelled or moved since the listing.
        return result is not None
