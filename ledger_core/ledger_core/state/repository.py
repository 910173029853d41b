"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
(or execute a statement directly) so that generated defaults are populated;
the caller is responsible for calling ``session.commit()``.

Balance mutations are single-statement ``UPDATE ... RETURNING`` compare-and-
swaps: the new balance and ledger sequence are computed by the database in
the same statement that checks the precondition, so two concurrent writers
can never both apply against the same ``balance_before``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.billing.errors import UnknownTenant
from ledger_core.billing.models import UNLIMITED_CREDITS
from ledger_core.state.tables import (
    BillingHistoryTable,
    CreditTransactionTable,
    TenantBillingTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _insert_ignore_conflict(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    returning: Any,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The conflict target is left open so that a violation of *any* unique
    constraint on *table* turns the insert into a no-op.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    returning:
        Column to return for an inserted row.

    Returns
    -------
    The returned column value, or ``None`` when the row already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing()
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing()
    result = await session.execute(stmt.returning(returning))
    return result.scalar_one_or_none()


async def acquire_tenant_lock(session: AsyncSession, tenant_id: str) -> None:
    """Serialise billing mutations for *tenant_id* until the transaction ends.

    PostgreSQL takes a transaction-scoped advisory lock keyed on the tenant.
    SQLite is single-writer, so no lock is needed.
    """
    if "postgresql" not in _dialect_name(session):
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": f"tenant_billing:{tenant_id}"},
    )


# ---------------------------------------------------------------------------
# TenantBillingRepository
# ---------------------------------------------------------------------------


class TenantBillingRepository:
    """Access to the ``tenant_billing`` record of one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    async def get(self, *, for_update: bool = False, include_archived: bool = False) -> TenantBillingTable | None:
        """Fetch the record, refreshing any copy already in the identity map.

        ``for_update`` adds ``SELECT ... FOR UPDATE`` on PostgreSQL; SQLite
        ignores it.
        """
        stmt = (
            select(TenantBillingTable)
            .where(TenantBillingTable.tenant_id == self._tenant_id)
            .execution_options(populate_existing=True)
        )
        if not include_archived:
            stmt = stmt.where(TenantBillingTable.archived_at.is_(None))
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def require(self, *, for_update: bool = False) -> TenantBillingTable:
        """Like :meth:`get` but raises :class:`UnknownTenant` when absent or archived."""
        row = await self.get(for_update=for_update)
        if row is None:
            raise UnknownTenant(self._tenant_id)
        return row

    async def create(self, *, plan: str = "Free") -> TenantBillingTable:
        """Insert a fresh record with a zero balance.

        The caller grants the plan's initial credits through the ledger so
        the grant is recorded as a transaction.

        Raises
        ------
        ValueError
            If the tenant already has a billing record.
        """
        if await self.get(include_archived=True) is not None:
            raise ValueError(f"Tenant '{self._tenant_id}' already has a billing record")
        row = TenantBillingTable(
            tenant_id=self._tenant_id,
            current_plan=plan,
            subscription_status="ACTIVE",
            credit_balance=0,
            ledger_sequence=0,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def archive(self) -> TenantBillingTable | None:
        """Soft-delete the record by setting ``archived_at``.

        Returns the updated row, or ``None`` if the tenant does not exist.
        """
        row = await self.get()
        if row is None:
            return None
        row.archived_at = datetime.now(UTC)
        await self._session.flush()
        logger.info("Archived billing record for tenant=%s", self._tenant_id)
        return row

    async def apply_credit_delta(
        self,
        delta: int,
        *,
        extra_values: dict[str, Any] | None = None,
    ) -> tuple[int, int] | None:
        """Atomically add *delta* to a finite balance.

        The update only matches when the tenant is active, the balance is
        not the unlimited sentinel and the result stays non-negative.

        Returns
        -------
        tuple[int, int] | None
            ``(balance_after, sequence)`` on success, ``None`` when the
            precondition failed and nothing was written.
        """
        values: dict[str, Any] = {
            "credit_balance": TenantBillingTable.credit_balance + delta,
            "ledger_sequence": TenantBillingTable.ledger_sequence + 1,
            "updated_at": datetime.now(UTC),
        }
        values.update(extra_values or {})
        stmt = (
            update(TenantBillingTable)
            .where(
                TenantBillingTable.tenant_id == self._tenant_id,
                TenantBillingTable.archived_at.is_(None),
                TenantBillingTable.credit_balance != UNLIMITED_CREDITS,
                TenantBillingTable.credit_balance + delta >= 0,
            )
            .values(**values)
            .returning(TenantBillingTable.credit_balance, TenantBillingTable.ledger_sequence)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    async def compare_and_set_balance(
        self,
        *,
        expected_balance: int,
        expected_sequence: int,
        new_balance: int,
        extra_values: dict[str, Any] | None = None,
    ) -> int | None:
        """Replace the balance only if nobody mutated it since it was read.

        Returns the new ledger sequence, or ``None`` on a lost race.
        """
        values: dict[str, Any] = {
            "credit_balance": new_balance,
            "ledger_sequence": TenantBillingTable.ledger_sequence + 1,
            "updated_at": datetime.now(UTC),
        }
        values.update(extra_values or {})
        stmt = (
            update(TenantBillingTable)
            .where(
                TenantBillingTable.tenant_id == self._tenant_id,
                TenantBillingTable.archived_at.is_(None),
                TenantBillingTable.credit_balance == expected_balance,
                TenantBillingTable.ledger_sequence == expected_sequence,
            )
            .values(**values)
            .returning(TenantBillingTable.ledger_sequence)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_fields(self, **values: Any) -> None:
        """Write non-balance columns (plan, status, dates, references)."""
        if "credit_balance" in values or "ledger_sequence" in values:
            raise ValueError("Balance columns change only through the credit ledger")
        values["updated_at"] = datetime.now(UTC)
        stmt = (
            update(TenantBillingTable)
            .where(TenantBillingTable.tenant_id == self._tenant_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def bind_customer_ref(self, customer_ref: str) -> bool:
        """Persist *customer_ref* unless a different one is already bound.

        Returns ``True`` when the tenant ends up bound to *customer_ref*.
        """
        stmt = (
            update(TenantBillingTable)
            .where(
                TenantBillingTable.tenant_id == self._tenant_id,
                TenantBillingTable.external_customer_ref.is_(None),
            )
            .values(external_customer_ref=customer_ref, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        row = await self.get(include_archived=True)
        return row is not None and row.external_customer_ref == customer_ref


# ---------------------------------------------------------------------------
# BillingDirectoryRepository
# ---------------------------------------------------------------------------


class BillingDirectoryRepository:
    """Cross-tenant lookups over ``tenant_billing``.

    .. warning:: **Intentionally cross-tenant**

       Used by the webhook reconciler (which learns the tenant from the
       payment processor's customer reference) and by the downgrade sweep.
       Never expose these results to a tenant-scoped caller.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def tenant_for_customer_ref(self, customer_ref: str) -> str | None:
        stmt = select(TenantBillingTable.tenant_id).where(
            TenantBillingTable.external_customer_ref == customer_ref,
            TenantBillingTable.archived_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def is_active_tenant(self, tenant_id: str) -> bool:
        stmt = select(TenantBillingTable.tenant_id).where(
            TenantBillingTable.tenant_id == tenant_id,
            TenantBillingTable.archived_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_due_downgrades(self, now: datetime, *, limit: int = 500) -> list[str]:
        """Return tenant ids whose pending downgrade is effective at *now*."""
        stmt = (
            select(TenantBillingTable.tenant_id)
            .where(
                TenantBillingTable.pending_plan.is_not(None),
                TenantBillingTable.pending_effective_at <= now,
                TenantBillingTable.archived_at.is_(None),
            )
            .order_by(TenantBillingTable.pending_effective_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# CreditTransactionRepository
# ---------------------------------------------------------------------------


class CreditTransactionRepository:
    """Append-only access to ``credit_transactions`` for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def append(
        self,
        *,
        sequence: int,
        type: str,
        amount: int,
        balance_before: int,
        balance_after: int,
        reason: str | None = None,
        related_document_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransactionTable:
        row = CreditTransactionTable(
            id=uuid.uuid4().hex,
            tenant_id=self._tenant_id,
            sequence=sequence,
            type=type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            related_document_id=related_document_id,
            metadata_json=metadata,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        type: str | None = None,
    ) -> list[CreditTransactionTable]:
        """Return transactions newest first."""
        stmt = select(CreditTransactionTable).where(CreditTransactionTable.tenant_id == self._tenant_id)
        if type is not None:
            stmt = stmt.where(CreditTransactionTable.type == type)
        stmt = stmt.order_by(CreditTransactionTable.sequence.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        stmt = select(func.count()).where(CreditTransactionTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def verify_chain(self, stored_balance: int) -> dict[str, Any]:
        """Replay the ledger and compare it with *stored_balance*.

        Walks every transaction in sequence order checking that sequences
        are gap-free, each ``balance_before`` equals the previous
        ``balance_after`` and each row's arithmetic holds.  The replayed
        sum of amounts must equal the stored balance.

        Returns
        -------
        dict
            ``valid``, ``transactions_checked``, ``replayed_balance``,
            ``stored_balance`` and ``first_break`` (sequence number of the
            first bad row, or ``None``).
        """
        stmt = (
            select(CreditTransactionTable)
            .where(CreditTransactionTable.tenant_id == self._tenant_id)
            .order_by(CreditTransactionTable.sequence.asc())
        )
        result = await self._session.execute(stmt)

        checked = 0
        replayed = 0
        first_break: int | None = None
        for entry in result.scalars():
            expected_sequence = checked + 1
            if (
                entry.sequence != expected_sequence
                or entry.balance_before != replayed
                or entry.balance_after != entry.balance_before + entry.amount
            ):
                logger.warning(
                    "Ledger chain break for tenant=%s at sequence=%d (expected sequence=%d, balance_before=%d)",
                    self._tenant_id,
                    entry.sequence,
                    expected_sequence,
                    replayed,
                )
                first_break = entry.sequence
                break
            replayed += entry.amount
            checked += 1

        return {
            "valid": first_break is None and replayed == stored_balance,
            "transactions_checked": checked,
            "replayed_balance": replayed,
            "stored_balance": stored_balance,
            "first_break": first_break,
        }


# ---------------------------------------------------------------------------
# BillingHistoryRepository
# ---------------------------------------------------------------------------


class BillingHistoryRepository:
    """Append-only access to ``billing_history`` for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def record(
        self,
        *,
        invoice_number: str,
        amount: Decimal,
        plan: str | None = None,
        status: str = "PAID",
        paid_at: datetime | None = None,
        billing_period_start: datetime | None = None,
        billing_period_end: datetime | None = None,
        external_invoice_ref: str | None = None,
        external_payment_ref: str | None = None,
        external_event_id: str | None = None,
    ) -> str | None:
        """Insert a history row unless the invoice is already recorded.

        Returns
        -------
        str | None
            The new row id, or ``None`` if the invoice number or external
            invoice reference already exists.
        """
        values = {
            "id": uuid.uuid4().hex,
            "tenant_id": self._tenant_id,
            "invoice_number": invoice_number,
            "plan": plan,
            "amount": amount,
            "status": status,
            "paid_at": paid_at,
            "billing_period_start": billing_period_start,
            "billing_period_end": billing_period_end,
            "external_invoice_ref": external_invoice_ref,
            "external_payment_ref": external_payment_ref,
            "external_event_id": external_event_id,
            "created_at": datetime.now(UTC),
        }
        row_id = await _insert_ignore_conflict(
            self._session,
            BillingHistoryTable,
            values,
            returning=BillingHistoryTable.id,
        )
        if row_id is None:
            logger.info(
                "Billing history for tenant=%s invoice=%s already recorded",
                self._tenant_id,
                external_invoice_ref or invoice_number,
            )
        return row_id

    async def list_recent(self, *, limit: int = 50) -> list[BillingHistoryTable]:
        stmt = (
            select(BillingHistoryTable)
            .where(BillingHistoryTable.tenant_id == self._tenant_id)
            .order_by(BillingHistoryTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Journal of payment processor events (**cross-tenant**)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, event_id: str) -> WebhookEventTable | None:
        stmt = (
            select(WebhookEventTable)
            .where(WebhookEventTable.external_event_id == event_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(
        self,
        *,
        event_id: str,
        event_type: str,
        status: str,
        tenant_id: str | None = None,
        detail: str | None = None,
    ) -> WebhookEventTable:
        """Insert the journal row, or update a previously failed attempt.

        A concurrent insert of the same *event_id* surfaces as
        :class:`~sqlalchemy.exc.IntegrityError` on flush.
        """
        now = datetime.now(UTC)
        row = await self.get(event_id)
        if row is None:
            row = WebhookEventTable(
                external_event_id=event_id,
                event_type=event_type,
                status=status,
                tenant_id=tenant_id,
                detail=detail,
                attempts=1,
                received_at=now,
                processed_at=now,
            )
            self._session.add(row)
        else:
            row.status = status
            row.tenant_id = tenant_id or row.tenant_id
            row.detail = detail
            row.attempts = row.attempts + 1
            row.processed_at = now
        await self._session.flush()
        return row
