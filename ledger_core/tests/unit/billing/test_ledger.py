"""Unit tests for ledger_core.billing.ledger against a SQLite store."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from ledger_core.billing.catalog import PlanName
from ledger_core.billing.errors import InsufficientCredits, LedgerConflict, UnknownTenant
from ledger_core.billing.ledger import CreditLedger, archive_tenant, provision_tenant
from ledger_core.billing.models import UNLIMITED_CREDITS, TransactionType
from ledger_core.state.repository import CreditTransactionRepository, TenantBillingRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_free_grant_is_recorded(self, session: AsyncSession) -> None:
        grant = await provision_tenant(session, "new-co")
        await session.commit()

        assert grant.type is TransactionType.BONUS
        assert grant.balance_before == 0
        assert grant.balance_after == 5
        assert await CreditLedger(session, "new-co").balance() == 5

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, session: AsyncSession, free_tenant: str) -> None:
        with pytest.raises(ValueError, match="already has a billing record"):
            await provision_tenant(session, free_tenant)

    @pytest.mark.asyncio
    async def test_archived_tenant_is_unknown(self, session: AsyncSession, free_tenant: str) -> None:
        assert await archive_tenant(session, free_tenant) is True
        await session.commit()

        with pytest.raises(UnknownTenant):
            await CreditLedger(session, free_tenant).deduct(1)


# ---------------------------------------------------------------------------
# Deductions
# ---------------------------------------------------------------------------


class TestDeduct:
    @pytest.mark.asyncio
    async def test_deduct_records_usage(self, session: AsyncSession, free_tenant: str) -> None:
        ledger = CreditLedger(session, free_tenant)
        mutation = await ledger.deduct(2, document_id="doc-1")
        await session.commit()

        assert mutation.applied
        assert mutation.amount == -2
        assert (mutation.balance_before, mutation.balance_after) == (5, 3)

        record = await TenantBillingRepository(session, free_tenant).require()
        assert record.credit_balance == 3
        assert record.monthly_credits_used == 2
        assert record.monthly_docs_processed == 1

        [entry] = await ledger.transactions(type=TransactionType.USED)
        assert entry["related_document_id"] == "doc-1"
        assert entry["reason"] == "AI document processing"

    @pytest.mark.asyncio
    async def test_insufficient_credits_leaves_balance_untouched(
        self, session: AsyncSession, free_tenant: str
    ) -> None:
        ledger = CreditLedger(session, free_tenant)
        with pytest.raises(InsufficientCredits) as exc_info:
            await ledger.deduct(6)
        await session.rollback()

        assert exc_info.value.required == 6
        assert exc_info.value.available == 5
        payload = exc_info.value.to_dict()
        assert payload["error"] == "INSUFFICIENT_CREDITS"
        assert payload["credit_price"]["recommended"]
        assert await ledger.balance() == 5
        assert await CreditTransactionRepository(session, free_tenant).count() == 1

    @pytest.mark.asyncio
    async def test_deduct_to_exactly_zero(self, session: AsyncSession, free_tenant: str) -> None:
        mutation = await CreditLedger(session, free_tenant).deduct(5)
        assert mutation.balance_after == 0

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, session: AsyncSession, free_tenant: str) -> None:
        with pytest.raises(ValueError):
            await CreditLedger(session, free_tenant).deduct(0)

    @pytest.mark.asyncio
    async def test_unlimited_tenant_is_never_charged(self, session: AsyncSession, free_tenant: str) -> None:
        ledger = CreditLedger(session, free_tenant)
        await ledger.set_balance(UNLIMITED_CREDITS, reason="Enterprise contract")
        await session.commit()

        mutation = await ledger.deduct(50)
        await session.commit()

        assert mutation.applied is False
        assert mutation.unlimited is True
        assert await ledger.balance() == UNLIMITED_CREDITS
        assert await CreditTransactionRepository(session, free_tenant).count() == 2

    @pytest.mark.asyncio
    async def test_concurrent_deductions_never_overdraw(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        free_tenant: str,
    ) -> None:
        """Two deductions of 3 against a balance of 5: exactly one wins."""

        async def _deduct() -> str:
            async with session_factory() as session:
                try:
                    await CreditLedger(session, free_tenant).deduct(3)
                    await session.commit()
                    return "ok"
                except InsufficientCredits:
                    await session.rollback()
                    return "insufficient"

        outcomes = await asyncio.gather(_deduct(), _deduct())
        assert sorted(outcomes) == ["insufficient", "ok"]

        async with session_factory() as session:
            ledger = CreditLedger(session, free_tenant)
            assert await ledger.balance() == 2
            report = await ledger.verify()
            assert report["valid"] is True


# ---------------------------------------------------------------------------
# Additions
# ---------------------------------------------------------------------------


class TestAdditions:
    @pytest.mark.asyncio
    async def test_purchase_converts_currency(self, session: AsyncSession, free_tenant: str) -> None:
        mutation = await CreditLedger(session, free_tenant).purchase(Decimal("10"))
        assert mutation.type is TransactionType.PURCHASE
        assert mutation.amount == 80
        assert mutation.balance_after == 85

    @pytest.mark.asyncio
    async def test_purchase_below_one_unit_is_noop(self, session: AsyncSession, free_tenant: str) -> None:
        mutation = await CreditLedger(session, free_tenant).purchase(Decimal("0.40"))
        assert mutation.applied is False
        assert await CreditLedger(session, free_tenant).balance() == 5

    @pytest.mark.asyncio
    async def test_refill_not_applicable_on_free(self, session: AsyncSession, free_tenant: str) -> None:
        mutation = await CreditLedger(session, free_tenant).refill()
        assert mutation.applied is False
        assert "not applicable" in (mutation.message or "")

    @pytest.mark.asyncio
    async def test_refill_rolls_over_and_resets_counters(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        ledger = CreditLedger(session, tenant_id)
        await ledger.deduct(30)
        await session.commit()

        mutation = await ledger.refill()
        await session.commit()

        assert mutation.amount == 100
        assert mutation.balance_after == 170
        record = await TenantBillingRepository(session, tenant_id).require()
        assert record.monthly_credits_used == 0
        assert record.monthly_docs_processed == 0
        assert record.last_credit_refill_at is not None

    @pytest.mark.asyncio
    async def test_bonus_requires_positive_amount(self, session: AsyncSession, free_tenant: str) -> None:
        with pytest.raises(ValueError):
            await CreditLedger(session, free_tenant).bonus(0, reason="nothing")


# ---------------------------------------------------------------------------
# Absolute resets
# ---------------------------------------------------------------------------


class TestSetBalance:
    @pytest.mark.asyncio
    async def test_records_delta(self, session: AsyncSession, free_tenant: str) -> None:
        mutation = await CreditLedger(session, free_tenant).set_balance(40, reason="Support goodwill")
        assert mutation.type is TransactionType.ADJUSTMENT
        assert mutation.amount == 35
        assert mutation.balance_after == 40

    @pytest.mark.asyncio
    async def test_same_balance_is_noop(self, session: AsyncSession, free_tenant: str) -> None:
        mutation = await CreditLedger(session, free_tenant).set_balance(5, reason="noop")
        assert mutation.applied is False

    @pytest.mark.asyncio
    async def test_expected_balance_mismatch_conflicts(self, session: AsyncSession, free_tenant: str) -> None:
        with pytest.raises(LedgerConflict):
            await CreditLedger(session, free_tenant).set_balance(100, reason="upgrade", expected_balance=4)

    @pytest.mark.asyncio
    async def test_negative_balance_rejected(self, session: AsyncSession, free_tenant: str) -> None:
        with pytest.raises(ValueError):
            await CreditLedger(session, free_tenant).set_balance(-5, reason="bad")


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


class TestVerify:
    @pytest.mark.asyncio
    async def test_replay_matches_balance_after_mixed_operations(
        self, session: AsyncSession, on_plan
    ) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        ledger = CreditLedger(session, tenant_id)
        await ledger.deduct(7)
        await ledger.purchase(5)
        await ledger.refill()
        await ledger.set_balance(12, reason="Correction")
        await ledger.deduct(2)
        await session.commit()

        report = await ledger.verify()
        assert report["valid"] is True
        assert report["replayed_balance"] == 10
        assert report["stored_balance"] == 10
        assert report["transactions_checked"] == 7
        assert report["first_break"] is None

    @pytest.mark.asyncio
    async def test_transactions_newest_first_with_paging(self, session: AsyncSession, free_tenant: str) -> None:
        ledger = CreditLedger(session, free_tenant)
        await ledger.deduct(1)
        await ledger.deduct(1)
        await session.commit()

        newest = await ledger.transactions(limit=1)
        assert newest[0]["sequence"] == 3
        older = await ledger.transactions(limit=5, offset=1)
        assert [entry["sequence"] for entry in older] == [2, 1]
