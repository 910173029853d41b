"""Per-tenant plan state machine.

Owns every transition of ``current_plan``, ``subscription_status`` and the
pending-downgrade fields:

* **Upgrade** -- immediate, only after the processor confirmed payment.
* **Downgrade request** -- validated against current usage, scheduled
  after a 7-day grace period.
* **Downgrade execution** -- run by the periodic sweep once effective.
* **Downgrade cancellation** -- any time before the effective date.
* **Cancellation** -- back to Free with an empty balance.
* **Payment failure** -- PAST_DUE, plan and balance untouched.

Every transition first takes the tenant's lock (advisory lock plus
``SELECT ... FOR UPDATE`` on PostgreSQL) so transitions on one tenant are
serialised while different tenants proceed in parallel.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.billing.catalog import (
    Feature,
    PlanName,
    check_downgrade,
    has_feature,
    lookup_plan,
    parse_plan_name,
)
from ledger_core.billing.errors import DowngradeBlocked, InvalidPlanChange, InvalidUpgradePath
from ledger_core.billing.ledger import CreditLedger
from ledger_core.billing.models import (
    BILLING_CYCLE_DAYS,
    DOWNGRADE_GRACE_DAYS,
    UNLIMITED_CREDITS,
    BillingCycle,
    CreditMutation,
    DowngradePending,
    PlanChangeResult,
    Stable,
    SubscriptionStatus,
    TransactionType,
)
from ledger_core.state.repository import TenantBillingRepository, acquire_tenant_lock
from ledger_core.state.tables import TenantBillingTable
from ledger_core.state.usage import ResourceUsageSource, SqlResourceUsageSource

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def plan_state_of(record: TenantBillingTable) -> Stable | DowngradePending:
    """Project a billing row onto the :data:`PlanState` variant."""
    current = parse_plan_name(record.current_plan) or PlanName.FREE
    target = parse_plan_name(record.pending_plan)
    if target is None or record.pending_effective_at is None:
        return Stable(plan=current)
    return DowngradePending(
        current_plan=current,
        target_plan=target,
        effective_at=record.pending_effective_at,
        reason=record.pending_reason,
    )


def is_superseded_subscription(record: TenantBillingTable, subscription_ref: str | None) -> bool:
    """Whether processor events for *subscription_ref* no longer concern the tenant.

    That is the case when the tenant is bound to a different subscription,
    or sits on an Enterprise contract that no processor subscription backs.
    """
    if not subscription_ref:
        return False
    bound = record.external_subscription_ref
    if bound:
        return bound != subscription_ref
    return parse_plan_name(record.current_plan) is PlanName.ENTERPRISE


def _feature_columns(plan: PlanName) -> dict[str, bool]:
    return {
        "sms_enabled": has_feature(plan, Feature.SMS),
        "email_enabled": has_feature(plan, Feature.EMAIL),
    }


_CLEAR_PENDING: dict[str, Any] = {
    "pending_plan": None,
    "pending_effective_at": None,
    "pending_reason": None,
}


class PlanStateMachine:
    """Plan transitions for a single tenant.

    Parameters
    ----------
    session:
        Active session; the caller commits.
    tenant_id:
        Tenant whose record is transitioned.
    usage_source:
        Where driver/document counts come from for downgrade validation.
        Defaults to the CRUD service's tables in the same database.
    clock:
        Injectable "now" for the grace period and sweep.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        usage_source: ResourceUsageSource | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._accounts = TenantBillingRepository(session, tenant_id)
        self._ledger = CreditLedger(session, tenant_id)
        self._usage = usage_source or SqlResourceUsageSource(session)
        self._clock = clock or _utcnow

    async def _lock(self) -> TenantBillingTable:
        await acquire_tenant_lock(self._session, self._tenant_id)
        return await self._accounts.require(for_update=True)

    def _result(
        self,
        previous: PlanName,
        plan: PlanName,
        status: str,
        *,
        applied: bool = True,
        credit_change: CreditMutation | None = None,
        pending: DowngradePending | None = None,
        message: str | None = None,
    ) -> PlanChangeResult:
        return PlanChangeResult(
            tenant_id=self._tenant_id,
            applied=applied,
            previous_plan=previous,
            plan=plan,
            status=SubscriptionStatus(status),
            credit_change=credit_change,
            pending=pending,
            message=message,
        )

    async def _bind_customer(self, customer_ref: str | None) -> None:
        if customer_ref and not await self._accounts.bind_customer_ref(customer_ref):
            logger.warning(
                "Tenant=%s already bound to a different customer; ignoring customer_ref=%s",
                self._tenant_id,
                customer_ref,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def state(self) -> Stable | DowngradePending:
        return plan_state_of(await self._accounts.require())

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        target_plan: str | PlanName,
        *,
        customer_ref: str | None = None,
        subscription_ref: str | None = None,
        billing_cycle: BillingCycle | None = None,
    ) -> PlanChangeResult:
        """Move the tenant up to *target_plan* after a confirmed payment.

        Moving off Free with the untouched initial grant replaces that grant
        with the new plan's initial allotment; otherwise the allotment is
        added to what remains.  Paid-to-paid upgrades add the new plan's
        monthly allotment.

        Raises
        ------
        InvalidUpgradePath
            If *target_plan* is unknown, Enterprise, or below the current plan.
        """
        record = await self._lock()
        current = parse_plan_name(record.current_plan) or PlanName.FREE
        target = parse_plan_name(target_plan)
        if target is None:
            raise InvalidUpgradePath(current, str(target_plan), f"Unknown plan {target_plan!r}")
        if target is PlanName.ENTERPRISE:
            raise InvalidUpgradePath(current, target.value, "Enterprise plans require contacting sales")

        target_limits = lookup_plan(target)
        current_limits = lookup_plan(current)

        if target is current:
            # Redundant confirmation (another event already applied it) or a
            # lapsed subscription being paid again on the same plan.
            await self._bind_customer(customer_ref)
            changes: dict[str, Any] = {}
            if record.subscription_status != SubscriptionStatus.ACTIVE.value:
                changes["subscription_status"] = SubscriptionStatus.ACTIVE.value
            if subscription_ref and record.external_subscription_ref != subscription_ref:
                changes["external_subscription_ref"] = subscription_ref
            if changes:
                await self._accounts.update_fields(**changes)
            return self._result(
                current,
                current,
                changes.get("subscription_status", record.subscription_status),
                applied=bool(changes),
                message=f"Already on {current.value}",
            )

        if target_limits.tier < current_limits.tier:
            raise InvalidUpgradePath(
                current,
                target.value,
                f"{target.value} is below the current {current.value} plan; request a downgrade instead",
            )

        metadata = {"old_plan": current.value, "new_plan": target.value}
        if current is PlanName.FREE:
            free_grant = current_limits.initial_credits or 0
            untouched = record.credit_balance == free_grant and record.monthly_credits_used == 0
            new_credits = target_limits.initial_credits or 0
            if untouched:
                credit_change = await self._ledger.set_balance(
                    new_credits,
                    type=TransactionType.BONUS,
                    reason=f"Upgrade to {target.value}: initial credits replace unused Free grant",
                    metadata={**metadata, "replaced_free_credits": True},
                    expected_balance=record.credit_balance,
                )
            else:
                credit_change = await self._ledger.bonus(
                    new_credits,
                    reason=f"Upgrade to {target.value}: initial credits",
                    metadata={**metadata, "replaced_free_credits": False},
                )
        else:
            credit_change = await self._ledger.bonus(
                target_limits.monthly_credits or 0,
                reason=f"Upgrade to {target.value}: monthly credits",
                metadata=metadata,
            )

        now = self._clock()
        fields: dict[str, Any] = {
            "current_plan": target.value,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "plan_start_date": now,
            "next_billing_date": now + timedelta(days=BILLING_CYCLE_DAYS),
            **_CLEAR_PENDING,
            **_feature_columns(target),
        }
        if billing_cycle is not None:
            fields["billing_cycle"] = billing_cycle.value
        if subscription_ref:
            fields["external_subscription_ref"] = subscription_ref
        await self._accounts.update_fields(**fields)
        await self._bind_customer(customer_ref)

        logger.info(
            "Upgraded tenant=%s %s -> %s (credits %+d)",
            self._tenant_id,
            current.value,
            target.value,
            credit_change.amount,
        )
        return self._result(
            current,
            target,
            SubscriptionStatus.ACTIVE.value,
            credit_change=credit_change,
            message=f"Upgraded to {target.value}",
        )

    # ------------------------------------------------------------------
    # Downgrade
    # ------------------------------------------------------------------

    async def request_downgrade(
        self,
        target_plan: str | PlanName,
        *,
        reason: str = "User initiated downgrade",
    ) -> PlanChangeResult:
        """Schedule a move to a cheaper plan after the grace period.

        A new request replaces any downgrade already pending.

        Raises
        ------
        InvalidPlanChange
            If *target_plan* is unknown or not below the current plan.
        DowngradeBlocked
            If current usage exceeds any of the target plan's caps.
        """
        record = await self._lock()
        current = parse_plan_name(record.current_plan) or PlanName.FREE
        target = parse_plan_name(target_plan)
        if target is None:
            raise InvalidPlanChange(f"Unknown plan {target_plan!r}")
        if lookup_plan(target).tier >= lookup_plan(current).tier:
            raise InvalidPlanChange(f"{target.value} is not below the current {current.value} plan")

        usage = await self._usage.usage(self._tenant_id)
        violations = check_downgrade(usage, target)
        if violations:
            logger.info(
                "Downgrade of tenant=%s to %s blocked: %s",
                self._tenant_id,
                target.value,
                ", ".join(f"{v.resource.value} {v.current}>{v.limit}" for v in violations),
            )
            raise DowngradeBlocked(target, violations)

        effective_at = self._clock() + timedelta(days=DOWNGRADE_GRACE_DAYS)
        await self._accounts.update_fields(
            pending_plan=target.value,
            pending_effective_at=effective_at,
            pending_reason=reason,
        )
        pending = DowngradePending(
            current_plan=current,
            target_plan=target,
            effective_at=effective_at,
            reason=reason,
        )
        logger.info(
            "Scheduled downgrade tenant=%s %s -> %s at %s",
            self._tenant_id,
            current.value,
            target.value,
            effective_at.isoformat(),
        )
        return self._result(
            current,
            current,
            record.subscription_status,
            pending=pending,
            message=f"Downgrade to {target.value} scheduled for {effective_at.date().isoformat()}",
        )

    async def cancel_downgrade(self) -> PlanChangeResult:
        """Drop the pending downgrade before it takes effect."""
        record = await self._lock()
        state = plan_state_of(record)
        if not isinstance(state, DowngradePending):
            raise InvalidPlanChange("No pending downgrade to cancel")
        if state.effective_at <= self._clock():
            raise InvalidPlanChange("The downgrade is already effective and can no longer be cancelled")

        await self._accounts.update_fields(**_CLEAR_PENDING)
        logger.info("Cancelled pending downgrade to %s for tenant=%s", state.target_plan.value, self._tenant_id)
        return self._result(
            state.current_plan,
            state.current_plan,
            record.subscription_status,
            message="Pending downgrade cancelled",
        )

    async def execute_downgrade(self) -> PlanChangeResult | None:
        """Apply the pending downgrade if it is due.

        The balance is reset to the target plan's initial allotment and the
        monthly usage counters to zero; rolled over credits are not preserved.

        Returns
        -------
        PlanChangeResult | None
            ``None`` when nothing is pending or the effective date is in
            the future.
        """
        record = await self._lock()
        state = plan_state_of(record)
        if not isinstance(state, DowngradePending) or state.effective_at > self._clock():
            return None

        target = state.target_plan
        limits = lookup_plan(target)
        new_balance = limits.initial_credits if limits.initial_credits is not None else UNLIMITED_CREDITS
        credit_change = await self._ledger.set_balance(
            new_balance,
            reason=f"Downgrade to {target.value}: balance reset to plan allotment",
            metadata={"old_plan": state.current_plan.value, "new_plan": target.value},
        )
        # The allotment is a fresh grant; usage counters start over with it.
        await self._accounts.update_fields(
            current_plan=target.value,
            plan_start_date=self._clock(),
            monthly_credits_used=0,
            monthly_docs_processed=0,
            **_CLEAR_PENDING,
            **_feature_columns(target),
        )
        logger.info("Executed downgrade tenant=%s %s -> %s", self._tenant_id, state.current_plan.value, target.value)
        return self._result(
            state.current_plan,
            target,
            record.subscription_status,
            credit_change=credit_change,
            message=f"Downgraded to {target.value}",
        )

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def cancel_subscription(self) -> PlanChangeResult:
        """Return the tenant to Free with no credits and a CANCELED status."""
        record = await self._lock()
        previous = parse_plan_name(record.current_plan) or PlanName.FREE
        credit_change = await self._ledger.set_balance(
            0,
            reason="Subscription canceled",
            metadata={"old_plan": previous.value},
        )
        await self._accounts.update_fields(
            current_plan=PlanName.FREE.value,
            subscription_status=SubscriptionStatus.CANCELED.value,
            external_subscription_ref=None,
            billing_cycle=None,
            next_billing_date=None,
            sms_enabled=False,
            email_enabled=True,
            **_CLEAR_PENDING,
        )
        logger.info("Canceled subscription for tenant=%s (was %s)", self._tenant_id, previous.value)
        return self._result(
            previous,
            PlanName.FREE,
            SubscriptionStatus.CANCELED.value,
            credit_change=credit_change,
            message="Subscription canceled",
        )

    async def mark_past_due(self) -> PlanChangeResult:
        """Flag a failed payment; plan and balance are left alone."""
        record = await self._lock()
        plan = parse_plan_name(record.current_plan) or PlanName.FREE
        changed = record.subscription_status != SubscriptionStatus.PAST_DUE.value
        if changed:
            await self._accounts.update_fields(subscription_status=SubscriptionStatus.PAST_DUE.value)
            logger.warning("Tenant=%s marked PAST_DUE after failed payment", self._tenant_id)
        return self._result(plan, plan, SubscriptionStatus.PAST_DUE.value, applied=changed)

    async def sync_subscription(
        self,
        status: SubscriptionStatus,
        *,
        subscription_ref: str | None = None,
        next_billing_date: datetime | None = None,
    ) -> PlanChangeResult:
        """Mirror the processor's subscription status and renewal date.

        Updates for a subscription the tenant has moved away from are stale
        and ignored (see :func:`is_superseded_subscription`).
        """
        record = await self._lock()
        plan = parse_plan_name(record.current_plan) or PlanName.FREE
        if is_superseded_subscription(record, subscription_ref):
            logger.info(
                "Ignoring status %s for stale subscription %s (tenant=%s bound to %s)",
                status.value,
                subscription_ref,
                self._tenant_id,
                record.external_subscription_ref,
            )
            return self._result(plan, plan, record.subscription_status, applied=False, message="Stale subscription")

        fields: dict[str, Any] = {"subscription_status": status.value}
        if subscription_ref:
            fields["external_subscription_ref"] = subscription_ref
        if next_billing_date is not None:
            fields["next_billing_date"] = next_billing_date
        await self._accounts.update_fields(**fields)
        return self._result(plan, plan, status.value)

    async def activate_enterprise(
        self,
        *,
        customer_ref: str | None = None,
        subscription_ref: str | None = None,
        reason: str = "Enterprise contract activated",
    ) -> PlanChangeResult:
        """Put the tenant on Enterprise with unlimited credits.

        Enterprise is negotiated by sales and activated out-of-band; this is
        never reachable from checkout or webhooks.
        """
        record = await self._lock()
        previous = parse_plan_name(record.current_plan) or PlanName.FREE
        credit_change = await self._ledger.set_balance(
            UNLIMITED_CREDITS,
            reason=reason,
            metadata={"old_plan": previous.value, "new_plan": PlanName.ENTERPRISE.value},
        )
        now = self._clock()
        fields: dict[str, Any] = {
            "current_plan": PlanName.ENTERPRISE.value,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "plan_start_date": now,
            **_CLEAR_PENDING,
            **_feature_columns(PlanName.ENTERPRISE),
            # Any self-serve subscription is superseded by the contract.
            "external_subscription_ref": subscription_ref,
        }
        await self._accounts.update_fields(**fields)
        await self._bind_customer(customer_ref)
        logger.info("Activated Enterprise for tenant=%s (was %s)", self._tenant_id, previous.value)
        return self._result(
            previous,
            PlanName.ENTERPRISE,
            SubscriptionStatus.ACTIVE.value,
            credit_change=credit_change,
        )
