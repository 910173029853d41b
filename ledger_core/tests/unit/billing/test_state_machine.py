"""Unit tests for ledger_core.billing.state_machine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from ledger_core.billing.catalog import PlanName, ResourceType
from ledger_core.billing.errors import DowngradeBlocked, InvalidPlanChange, InvalidUpgradePath
from ledger_core.billing.ledger import CreditLedger
from ledger_core.billing.models import (
    DOWNGRADE_GRACE_DAYS,
    UNLIMITED_CREDITS,
    DowngradePending,
    Stable,
    SubscriptionStatus,
    TransactionType,
)
from ledger_core.billing.state_machine import PlanStateMachine, is_superseded_subscription
from ledger_core.state.repository import TenantBillingRepository
from sqlalchemy.ext.asyncio import AsyncSession

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _machine(session: AsyncSession, tenant_id: str, now: datetime = NOW) -> PlanStateMachine:
    return PlanStateMachine(session, tenant_id, clock=lambda: now)


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------


class TestUpgrade:
    @pytest.mark.asyncio
    async def test_untouched_free_grant_is_replaced(self, session: AsyncSession, free_tenant: str) -> None:
        result = await _machine(session, free_tenant).upgrade(PlanName.STARTER, customer_ref="cus_1")
        await session.commit()

        assert result.previous_plan is PlanName.FREE
        assert result.plan is PlanName.STARTER
        assert result.credit_change is not None
        assert result.credit_change.type is TransactionType.BONUS
        assert (result.credit_change.balance_before, result.credit_change.balance_after) == (5, 100)

        record = await TenantBillingRepository(session, free_tenant).require()
        assert record.current_plan == "Starter"
        assert record.subscription_status == "ACTIVE"
        assert record.external_customer_ref == "cus_1"
        assert record.next_billing_date == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_used_free_credits_are_kept(self, session: AsyncSession, free_tenant: str) -> None:
        await CreditLedger(session, free_tenant).deduct(2)
        await session.commit()

        result = await _machine(session, free_tenant).upgrade(PlanName.STARTER)
        await session.commit()

        assert result.credit_change is not None
        assert result.credit_change.amount == 100
        assert await CreditLedger(session, free_tenant).balance() == 103

    @pytest.mark.asyncio
    async def test_paid_to_paid_adds_monthly_allotment(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        result = await _machine(session, tenant_id).upgrade(PlanName.PROFESSIONAL)
        await session.commit()

        assert result.credit_change is not None
        assert result.credit_change.amount == 500
        assert await CreditLedger(session, tenant_id).balance() == 600

        record = await TenantBillingRepository(session, tenant_id).require()
        assert record.sms_enabled is True

    @pytest.mark.asyncio
    async def test_enterprise_rejected(self, session: AsyncSession, free_tenant: str) -> None:
        with pytest.raises(InvalidUpgradePath, match="contacting sales"):
            await _machine(session, free_tenant).upgrade(PlanName.ENTERPRISE)

    @pytest.mark.asyncio
    async def test_lower_plan_rejected(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        with pytest.raises(InvalidUpgradePath):
            await _machine(session, tenant_id).upgrade(PlanName.STARTER)

    @pytest.mark.asyncio
    async def test_same_plan_is_idempotent(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        result = await _machine(session, tenant_id).upgrade(PlanName.STARTER)
        await session.commit()

        assert result.applied is False
        assert result.credit_change is None
        assert await CreditLedger(session, tenant_id).balance() == 100

    @pytest.mark.asyncio
    async def test_enterprise_activation_clears_pending_downgrade(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await _machine(session, tenant_id).request_downgrade(PlanName.STARTER)
        await session.commit()

        await _machine(session, tenant_id).activate_enterprise()
        await session.commit()

        state = await _machine(session, tenant_id).state()
        assert isinstance(state, Stable)
        assert state.plan is PlanName.ENTERPRISE


# ---------------------------------------------------------------------------
# Downgrade
# ---------------------------------------------------------------------------


class TestDowngrade:
    @pytest.mark.asyncio
    async def test_blocked_when_usage_exceeds_target(self, session: AsyncSession, on_plan, add_drivers) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await add_drivers(tenant_id, 30)

        with pytest.raises(DowngradeBlocked) as exc_info:
            await _machine(session, tenant_id).request_downgrade(PlanName.STARTER)

        [violation] = exc_info.value.violations
        assert violation.resource is ResourceType.DRIVERS
        assert (violation.current, violation.limit) == (30, 25)
        assert exc_info.value.to_dict()["target_plan"] == "Starter"

    @pytest.mark.asyncio
    async def test_scheduled_after_grace_period(self, session: AsyncSession, on_plan, add_drivers) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await add_drivers(tenant_id, 25, documents=5)

        result = await _machine(session, tenant_id).request_downgrade(PlanName.STARTER, reason="Budget")
        await session.commit()

        assert result.plan is PlanName.PROFESSIONAL
        assert result.pending is not None
        assert result.pending.effective_at == NOW + timedelta(days=DOWNGRADE_GRACE_DAYS)

        state = await _machine(session, tenant_id).state()
        assert isinstance(state, DowngradePending)
        assert state.target_plan is PlanName.STARTER
        assert state.reason == "Budget"

    @pytest.mark.asyncio
    async def test_downgrade_to_same_or_higher_rejected(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        with pytest.raises(InvalidPlanChange):
            await _machine(session, tenant_id).request_downgrade(PlanName.STARTER)
        with pytest.raises(InvalidPlanChange):
            await _machine(session, tenant_id).request_downgrade(PlanName.PROFESSIONAL)

    @pytest.mark.asyncio
    async def test_cancel_before_effective(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await _machine(session, tenant_id).request_downgrade(PlanName.FREE)
        await session.commit()

        await _machine(session, tenant_id, NOW + timedelta(days=3)).cancel_downgrade()
        await session.commit()

        assert isinstance(await _machine(session, tenant_id).state(), Stable)

    @pytest.mark.asyncio
    async def test_cancel_without_pending_rejected(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        with pytest.raises(InvalidPlanChange, match="No pending downgrade"):
            await _machine(session, tenant_id).cancel_downgrade()

    @pytest.mark.asyncio
    async def test_execute_waits_for_effective_date(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await _machine(session, tenant_id).request_downgrade(PlanName.STARTER)
        await session.commit()

        early = await _machine(session, tenant_id, NOW + timedelta(days=6)).execute_downgrade()
        assert early is None

    @pytest.mark.asyncio
    async def test_execute_resets_balance_to_target_allotment(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await _machine(session, tenant_id).request_downgrade(PlanName.STARTER)
        await session.commit()

        result = await _machine(session, tenant_id, NOW + timedelta(days=8)).execute_downgrade()
        await session.commit()

        assert result is not None
        assert result.plan is PlanName.STARTER
        assert result.credit_change is not None
        assert result.credit_change.type is TransactionType.ADJUSTMENT
        assert await CreditLedger(session, tenant_id).balance() == 100

        record = await TenantBillingRepository(session, tenant_id).require()
        assert record.current_plan == "Starter"
        assert record.pending_plan is None
        assert record.sms_enabled is False

    @pytest.mark.asyncio
    async def test_free_grant_after_downgrade_is_replaced_on_upgrade(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        await CreditLedger(session, tenant_id).deduct(3)
        await _machine(session, tenant_id).request_downgrade(PlanName.FREE)
        await session.commit()

        later = NOW + timedelta(days=8)
        await _machine(session, tenant_id, later).execute_downgrade()
        await session.commit()

        record = await TenantBillingRepository(session, tenant_id).require()
        assert (record.credit_balance, record.monthly_credits_used, record.monthly_docs_processed) == (5, 0, 0)

        result = await _machine(session, tenant_id, later).upgrade(PlanName.STARTER)
        await session.commit()

        assert result.credit_change is not None
        assert (result.credit_change.balance_before, result.credit_change.balance_after) == (5, 100)
        assert await CreditLedger(session, tenant_id).balance() == 100


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_returns_to_free_with_empty_balance(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        result = await _machine(session, tenant_id).cancel_subscription()
        await session.commit()

        assert result.plan is PlanName.FREE
        assert result.status is SubscriptionStatus.CANCELED
        assert await CreditLedger(session, tenant_id).balance() == 0
        assert (await CreditLedger(session, tenant_id).verify())["valid"] is True

    @pytest.mark.asyncio
    async def test_payment_failure_keeps_plan_and_credits(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        first = await _machine(session, tenant_id).mark_past_due()
        second = await _machine(session, tenant_id).mark_past_due()
        await session.commit()

        assert first.applied is True
        assert second.applied is False
        record = await TenantBillingRepository(session, tenant_id).require()
        assert record.subscription_status == "PAST_DUE"
        assert record.current_plan == "Starter"
        assert record.credit_balance == 100

    @pytest.mark.asyncio
    async def test_sync_ignores_stale_subscription(self, session: AsyncSession, on_plan) -> None:
        tenant_id = await on_plan(PlanName.STARTER)
        machine = _machine(session, tenant_id)
        await machine.sync_subscription(SubscriptionStatus.ACTIVE, subscription_ref="sub_new")
        stale = await machine.sync_subscription(SubscriptionStatus.CANCELED, subscription_ref="sub_old")
        await session.commit()

        assert stale.applied is False
        record = await TenantBillingRepository(session, tenant_id).require()
        assert record.subscription_status == "ACTIVE"
        assert record.external_subscription_ref == "sub_new"

    @pytest.mark.asyncio
    async def test_enterprise_activation_is_unlimited(self, session: AsyncSession, free_tenant: str) -> None:
        result = await _machine(session, free_tenant).activate_enterprise(customer_ref="cus_big")
        await session.commit()

        assert result.plan is PlanName.ENTERPRISE
        assert await CreditLedger(session, free_tenant).balance() == UNLIMITED_CREDITS

    @pytest.mark.asyncio
    async def test_enterprise_activation_supersedes_self_serve_subscription(
        self, session: AsyncSession, on_plan
    ) -> None:
        tenant_id = await on_plan(PlanName.PROFESSIONAL)
        machine = _machine(session, tenant_id)
        await machine.sync_subscription(SubscriptionStatus.ACTIVE, subscription_ref="sub_pro")
        await machine.activate_enterprise()
        stale = await machine.sync_subscription(SubscriptionStatus.PAST_DUE, subscription_ref="sub_pro")
        await session.commit()

        record = await TenantBillingRepository(session, tenant_id).require()
        assert record.external_subscription_ref is None
        assert is_superseded_subscription(record, "sub_pro") is True
        assert stale.applied is False
        assert record.subscription_status == "ACTIVE"
