"""Credit ledger: the only writer of tenant credit balances.

Every operation changes ``tenant_billing.credit_balance`` and appends the
matching ``credit_transactions`` row inside the caller's transaction, so
the denormalised balance always equals the replayed sum of the ledger.

Additive operations (deduct, refill, purchase, bonus) are a single
``UPDATE ... RETURNING`` whose ``WHERE`` clause carries the precondition.
Absolute resets (adjustments) compare-and-swap on the balance and ledger
sequence that were read, retrying a few times on a lost race.

The ledger does not deduplicate by content.  Callers driven by external
events (the webhook reconciler) must guarantee at-most-once invocation.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.billing.catalog import CREDITS_PER_CURRENCY_UNIT, PlanName, credits_for_payment, lookup_plan
from ledger_core.billing.errors import InsufficientCredits, LedgerConflict
from ledger_core.billing.models import UNLIMITED_CREDITS, CreditMutation, TransactionType
from ledger_core.state.repository import CreditTransactionRepository, TenantBillingRepository
from ledger_core.state.tables import TenantBillingTable

logger = logging.getLogger(__name__)

_CAS_ATTEMPTS = 3


class CreditLedger:
    """Balance mutations and ledger queries for a single tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._accounts = TenantBillingRepository(session, tenant_id)
        self._transactions = CreditTransactionRepository(session, tenant_id)

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _noop(self, type: TransactionType, *, unlimited: bool, message: str) -> CreditMutation:
        return CreditMutation(
            tenant_id=self._tenant_id,
            type=type,
            applied=False,
            unlimited=unlimited,
            message=message,
        )

    async def _append(
        self,
        type: TransactionType,
        amount: int,
        balance_after: int,
        sequence: int,
        *,
        reason: str,
        document_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditMutation:
        balance_before = balance_after - amount
        row = await self._transactions.append(
            sequence=sequence,
            type=type.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            related_document_id=document_id,
            metadata=metadata,
        )
        logger.info(
            "Ledger %s tenant=%s amount=%+d balance=%d->%d seq=%d",
            type.value,
            self._tenant_id,
            amount,
            balance_before,
            balance_after,
            sequence,
        )
        return CreditMutation(
            tenant_id=self._tenant_id,
            type=type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            transaction_id=row.id,
        )

    async def _add(
        self,
        type: TransactionType,
        amount: int,
        *,
        reason: str,
        metadata: dict[str, Any] | None = None,
        extra_values: dict[str, Any] | None = None,
    ) -> CreditMutation:
        outcome = await self._accounts.apply_credit_delta(amount, extra_values=extra_values)
        if outcome is None:
            record = await self._accounts.require()
            if record.credit_balance == UNLIMITED_CREDITS:
                return self._noop(type, unlimited=True, message="Unlimited credits")
            raise LedgerConflict(f"Could not apply {type.value} of {amount} credits to tenant {self._tenant_id}")
        balance_after, sequence = outcome
        return await self._append(type, amount, balance_after, sequence, reason=reason, metadata=metadata)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def balance(self) -> int:
        record = await self._accounts.require()
        return record.credit_balance

    async def deduct(
        self,
        amount: int = 1,
        *,
        document_id: str | None = None,
        reason: str | None = None,
    ) -> CreditMutation:
        """Spend *amount* credits, typically after an AI document extraction.

        Raises
        ------
        InsufficientCredits
            If the balance cannot cover *amount*.  The balance is untouched.
        UnknownTenant
            If the tenant has no active billing record.
        """
        if amount <= 0:
            raise ValueError(f"Deduction amount must be positive, got {amount}")

        record = await self._accounts.require()
        if record.credit_balance == UNLIMITED_CREDITS:
            await self._accounts.update_fields(
                monthly_docs_processed=TenantBillingTable.monthly_docs_processed + 1,
            )
            return self._noop(TransactionType.USED, unlimited=True, message="Unlimited credits")

        outcome = await self._accounts.apply_credit_delta(
            -amount,
            extra_values={
                "monthly_credits_used": TenantBillingTable.monthly_credits_used + amount,
                "monthly_docs_processed": TenantBillingTable.monthly_docs_processed + 1,
            },
        )
        if outcome is None:
            current = await self._accounts.require()
            if current.credit_balance == UNLIMITED_CREDITS:
                return self._noop(TransactionType.USED, unlimited=True, message="Unlimited credits")
            logger.info(
                "Insufficient credits for tenant=%s: required=%d available=%d",
                self._tenant_id,
                amount,
                current.credit_balance,
            )
            raise InsufficientCredits(self._tenant_id, amount, current.credit_balance)

        balance_after, sequence = outcome
        return await self._append(
            TransactionType.USED,
            -amount,
            balance_after,
            sequence,
            reason=reason or "AI document processing",
            document_id=document_id,
        )

    async def refill(self, *, reason: str | None = None, metadata: dict[str, Any] | None = None) -> CreditMutation:
        """Add the plan's monthly allotment on top of the existing balance.

        Unused credits roll over.  The cycle usage counters are reset.
        """
        record = await self._accounts.require()
        limits = lookup_plan(record.current_plan)
        if record.credit_balance == UNLIMITED_CREDITS or limits.unlimited_credits:
            return self._noop(TransactionType.REFILL, unlimited=True, message="Unlimited plan")
        if not limits.monthly_credits:
            return self._noop(
                TransactionType.REFILL,
                unlimited=False,
                message=f"Refill not applicable for {limits.name.value} plan",
            )

        return await self._add(
            TransactionType.REFILL,
            limits.monthly_credits,
            reason=reason or f"Monthly {limits.name.value} plan refill",
            metadata={"plan": limits.name.value, **(metadata or {})},
            extra_values={
                "monthly_credits_used": 0,
                "monthly_docs_processed": 0,
                "last_credit_refill_at": datetime.now(UTC),
            },
        )

    async def purchase(
        self,
        amount_paid: int | Decimal,
        *,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditMutation:
        """Convert a confirmed payment into credits and add them."""
        credits = credits_for_payment(amount_paid)
        if credits == 0:
            return self._noop(TransactionType.PURCHASE, unlimited=False, message="Payment too small to buy credits")

        record = await self._accounts.require()
        if record.credit_balance == UNLIMITED_CREDITS:
            logger.warning(
                "Credit purchase of %s for tenant=%s on an unlimited plan; no credits added",
                amount_paid,
                self._tenant_id,
            )
            return self._noop(TransactionType.PURCHASE, unlimited=True, message="Unlimited credits")

        return await self._add(
            TransactionType.PURCHASE,
            credits,
            reason=reason or f"Purchased {credits} credits",
            metadata={
                "amount_paid": str(amount_paid),
                "credits_per_unit": CREDITS_PER_CURRENCY_UNIT,
                **(metadata or {}),
            },
        )

    async def bonus(
        self,
        amount: int,
        *,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditMutation:
        """Grant *amount* extra credits (plan upgrades and provisioning)."""
        if amount <= 0:
            raise ValueError(f"Bonus amount must be positive, got {amount}")
        return await self._add(TransactionType.BONUS, amount, reason=reason, metadata=metadata)

    async def set_balance(
        self,
        new_balance: int,
        *,
        type: TransactionType = TransactionType.ADJUSTMENT,
        reason: str,
        metadata: dict[str, Any] | None = None,
        expected_balance: int | None = None,
    ) -> CreditMutation:
        """Reset the balance to an absolute value, recording the delta.

        Parameters
        ----------
        new_balance:
            Target balance; ``-1`` switches the tenant to unlimited credits.
        type:
            Transaction type to record (ADJUSTMENT, or BONUS for upgrades).
        reason:
            Free-text audit reason.
        metadata:
            Extra JSON recorded on the transaction.
        expected_balance:
            When given, the reset only applies if the balance still equals
            this value; a mismatch raises :class:`LedgerConflict` instead of
            retrying.

        Returns
        -------
        CreditMutation
            ``applied`` is ``False`` when the balance already equals
            *new_balance*.
        """
        if new_balance < 0 and new_balance != UNLIMITED_CREDITS:
            raise ValueError(f"Balance cannot be negative, got {new_balance}")

        attempts = 1 if expected_balance is not None else _CAS_ATTEMPTS
        for _ in range(attempts):
            record = await self._accounts.require(for_update=True)
            before = record.credit_balance
            if expected_balance is not None and before != expected_balance:
                break
            if before == new_balance:
                return self._noop(type, unlimited=new_balance == UNLIMITED_CREDITS, message="Balance unchanged")
            sequence = await self._accounts.compare_and_set_balance(
                expected_balance=before,
                expected_sequence=record.ledger_sequence,
                new_balance=new_balance,
            )
            if sequence is None:
                logger.info("Balance reset for tenant=%s lost a race; re-reading", self._tenant_id)
                continue
            return await self._append(
                type,
                new_balance - before,
                new_balance,
                sequence,
                reason=reason,
                metadata=metadata,
            )

        raise LedgerConflict(f"Concurrent balance change for tenant {self._tenant_id}; retry the operation")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def transactions(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        type: TransactionType | None = None,
    ) -> list[dict[str, Any]]:
        rows = await self._transactions.list_recent(
            limit=limit,
            offset=offset,
            type=type.value if type is not None else None,
        )
        return [
            {
                "id": row.id,
                "sequence": row.sequence,
                "type": row.type,
                "amount": row.amount,
                "balance_before": row.balance_before,
                "balance_after": row.balance_after,
                "reason": row.reason,
                "related_document_id": row.related_document_id,
                "metadata": row.metadata_json,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ]

    async def verify(self) -> dict[str, Any]:
        """Replay the ledger and compare it with the stored balance."""
        record = await self._accounts.require()
        report = await self._transactions.verify_chain(record.credit_balance)
        report["tenant_id"] = self._tenant_id
        return report


async def provision_tenant(session: AsyncSession, tenant_id: str) -> CreditMutation:
    """Create the billing record for a new company on the Free plan.

    The one-time Free grant is recorded as a BONUS so that the ledger
    replays to the balance from the very first transaction.

    Raises
    ------
    ValueError
        If the tenant already has a billing record.
    """
    free = lookup_plan(PlanName.FREE)
    await TenantBillingRepository(session, tenant_id).create(plan=free.name.value)
    ledger = CreditLedger(session, tenant_id)
    grant = await ledger.bonus(
        free.initial_credits or 0,
        reason="Initial Free plan credits",
        metadata={"plan": free.name.value},
    )
    logger.info("Provisioned billing for tenant=%s on %s", tenant_id, free.name.value)
    return grant


async def archive_tenant(session: AsyncSession, tenant_id: str) -> bool:
    """Soft-archive the billing record; ledger rows are kept for audit."""
    row = await TenantBillingRepository(session, tenant_id).archive()
    return row is not None
