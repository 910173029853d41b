"""Read-only limit enforcement consulted by the CRUD service.

Answers "may this tenant add a driver / a document / spend credits?"
with a structured result carrying current usage, the cap and the next
tier to suggest, so the UI can offer an upgrade or a credit purchase
instead of an opaque failure.  Nothing here writes.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.billing.catalog import (
    CREDIT_PURCHASE_PRESETS,
    CREDITS_PER_CURRENCY_UNIT,
    Feature,
    PlanName,
    ResourceType,
    has_feature,
    lookup_plan,
    next_tier,
    parse_plan_name,
    required_plan_for,
)
from ledger_core.billing.models import UNLIMITED_CREDITS, LimitCheckResult, SubscriptionStatus
from ledger_core.billing.state_machine import plan_state_of
from ledger_core.state.repository import TenantBillingRepository
from ledger_core.state.tables import TenantBillingTable
from ledger_core.state.usage import ResourceUsageSource, SqlResourceUsageSource


def _percentage(current: int, limit: int | None) -> int | None:
    if not limit:
        return None
    return round(current * 100 / limit)


class LimitEnforcer:
    """Plan-cap and balance checks for a single tenant."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        usage_source: ResourceUsageSource | None = None,
    ) -> None:
        self._tenant_id = tenant_id
        self._accounts = TenantBillingRepository(session, tenant_id)
        self._usage = usage_source or SqlResourceUsageSource(session)

    async def _plan(self) -> tuple[TenantBillingTable, PlanName]:
        record = await self._accounts.require()
        return record, parse_plan_name(record.current_plan) or PlanName.FREE

    async def check_limit(
        self,
        resource: ResourceType | str,
        context: dict[str, Any] | None = None,
    ) -> LimitCheckResult:
        """Check whether one more unit of *resource* fits the tenant's plan.

        Parameters
        ----------
        resource:
            ``drivers``, ``documents`` or ``credits``.
        context:
            ``driver_id`` (required for documents) or ``amount`` (credits,
            defaults to 1).

        Raises
        ------
        ValueError
            For an unknown resource, or a documents check without a driver
            belonging to the tenant.
        """
        resource = ResourceType(resource)
        context = context or {}
        record, plan = await self._plan()
        limits = lookup_plan(plan)
        upgrade_to = next_tier(plan)

        if resource is ResourceType.DRIVERS:
            current = await self._usage.count_drivers(self._tenant_id)
            cap = limits.max_drivers
            if cap is None:
                return LimitCheckResult(
                    resource=resource,
                    allowed=True,
                    unlimited=True,
                    current=current,
                    current_plan=plan,
                )
            allowed = current < cap
            return LimitCheckResult(
                resource=resource,
                allowed=allowed,
                current=current,
                limit=cap,
                remaining=max(cap - current, 0),
                current_plan=plan,
                next_tier=upgrade_to,
                upgrade_required=not allowed,
                error_code=None if allowed else "DRIVER_LIMIT_REACHED",
                message=None
                if allowed
                else (
                    f"Driver limit reached ({current}/{cap}). "
                    f"Upgrade to {upgrade_to.value if upgrade_to else 'a higher plan'} to add more drivers."
                ),
            )

        if resource is ResourceType.DOCUMENTS:
            driver_id = context.get("driver_id")
            if not driver_id:
                raise ValueError("A documents limit check requires 'driver_id'")
            current = await self._usage.count_documents_for_driver(self._tenant_id, str(driver_id))
            if current is None:
                raise ValueError(f"Driver {driver_id!r} not found")
            cap = limits.max_documents_per_driver
            if cap is None:
                return LimitCheckResult(
                    resource=resource,
                    allowed=True,
                    unlimited=True,
                    current=current,
                    current_plan=plan,
                )
            allowed = current < cap
            return LimitCheckResult(
                resource=resource,
                allowed=allowed,
                current=current,
                limit=cap,
                remaining=max(cap - current, 0),
                current_plan=plan,
                next_tier=upgrade_to,
                upgrade_required=not allowed,
                error_code=None if allowed else "DOCUMENT_LIMIT_REACHED",
                message=None
                if allowed
                else f"Document limit reached for this driver ({current}/{cap}).",
                details={"driver_id": str(driver_id)},
            )

        required = int(context.get("amount", 1))
        if required <= 0:
            raise ValueError(f"Credit amount must be positive, got {required}")
        balance = record.credit_balance
        if balance == UNLIMITED_CREDITS:
            return LimitCheckResult(resource=resource, allowed=True, unlimited=True, current_plan=plan)
        allowed = balance >= required
        return LimitCheckResult(
            resource=resource,
            allowed=allowed,
            current=balance,
            limit=required,
            remaining=balance,
            current_plan=plan,
            next_tier=upgrade_to,
            error_code=None if allowed else "INSUFFICIENT_CREDITS",
            message=None
            if allowed
            else (
                f"Insufficient credits: {required} required, {balance} available. "
                "Purchase more credits to continue."
            ),
            details={}
            if allowed
            else {
                "credit_price": {
                    "per_credit": 1 / CREDITS_PER_CURRENCY_UNIT,
                    "recommended": list(CREDIT_PURCHASE_PRESETS),
                }
            },
        )

    async def has_feature(self, feature: Feature) -> bool:
        _, plan = await self._plan()
        return has_feature(plan, feature)

    async def feature_gate(self, feature: Feature) -> LimitCheckResult | None:
        """Return a denial result if *feature* is not on the tenant's plan, else ``None``."""
        _, plan = await self._plan()
        if has_feature(plan, feature):
            return None
        required = required_plan_for(feature)
        return LimitCheckResult(
            allowed=False,
            current_plan=plan,
            next_tier=required,
            upgrade_required=True,
            error_code="FEATURE_NOT_AVAILABLE",
            message=f"The {feature.value} feature requires the {required.value} plan or higher.",
            details={"feature": feature.value},
        )

    async def check_subscription_active(self) -> tuple[bool, str | None]:
        """Return ``(allowed, error_code)`` for actions needing a paid, current subscription.

        Free tenants always pass; there is nothing to be behind on.
        """
        record, plan = await self._plan()
        if plan is PlanName.FREE:
            return (True, None)
        if record.subscription_status == SubscriptionStatus.PAST_DUE.value:
            return (False, "PAYMENT_PAST_DUE")
        if record.subscription_status == SubscriptionStatus.CANCELED.value:
            return (False, "SUBSCRIPTION_CANCELED")
        return (True, None)

    async def usage_summary(self) -> dict[str, Any]:
        """Current plan, usage against caps, billing dates and pending change."""
        record, plan = await self._plan()
        limits = lookup_plan(plan)
        drivers = await self._usage.count_drivers(self._tenant_id)
        documents = await self._usage.count_documents(self._tenant_id)
        unlimited_credits = record.credit_balance == UNLIMITED_CREDITS
        state = plan_state_of(record)

        return {
            "tenant_id": self._tenant_id,
            "plan": limits.name.value,
            "subscription_status": record.subscription_status,
            "usage": {
                "drivers": {
                    "current": drivers,
                    "limit": limits.max_drivers,
                    "percentage": _percentage(drivers, limits.max_drivers),
                },
                "credits": {
                    "balance": None if unlimited_credits else record.credit_balance,
                    "unlimited": unlimited_credits,
                    "monthly_allotment": limits.monthly_credits,
                    "used_this_cycle": record.monthly_credits_used,
                },
                "documents": {
                    "total": documents,
                    "per_driver_limit": limits.max_documents_per_driver,
                    "processed_this_cycle": record.monthly_docs_processed,
                },
            },
            "billing": {
                "billing_cycle": record.billing_cycle,
                "plan_start_date": record.plan_start_date.isoformat() if record.plan_start_date else None,
                "next_billing_date": record.next_billing_date.isoformat() if record.next_billing_date else None,
                "has_payment_account": record.external_customer_ref is not None,
            },
            "pending_change": state.model_dump(mode="json") if state.kind == "downgrade_pending" else None,
            "features": sorted(feature.value for feature in limits.features),
            "next_tier": (next_tier(plan).value if next_tier(plan) else None),
        }
