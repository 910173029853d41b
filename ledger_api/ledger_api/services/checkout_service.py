"""Checkout orchestration: hand the user to the payment processor.

Nothing here touches the ledger or the plan.  A checkout only produces a
URL; credits and plan changes happen when the webhook reconciler receives
the processor's confirmation.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.config import APISettings
from ledger_api.middleware.prometheus import CHECKOUT_SESSIONS_TOTAL
from ledger_api.services.stripe_gateway import StripeGateway
from ledger_core.billing.catalog import PlanName, credits_for_payment, lookup_plan, parse_plan_name
from ledger_core.billing.errors import (
    BillingError,
    InvalidPlanChange,
    InvalidUpgradePath,
    PaymentAccountMissing,
)
from ledger_core.billing.models import UNLIMITED_CREDITS, BillingCycle
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import TenantBillingRepository
from ledger_core.state.tables import TenantBillingTable

logger = logging.getLogger(__name__)

CREDIT_PURCHASE_TYPE = "credit_purchase"


def _cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class CheckoutService:
    """Checkout and portal sessions for one tenant.

    Parameters
    ----------
    session:
        Tenant-scoped session.  The customer reference is committed as soon
        as it is created so a later failure cannot orphan the Stripe
        customer.
    settings:
        API settings (frontend URL, currency, configured price ids).
    gateway:
        Payment processor adapter.
    tenant_id:
        The tenant starting the checkout.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        gateway: StripeGateway,
        *,
        tenant_id: str,
    ) -> None:
        self._session = session
        self._settings = settings
        self._gateway = gateway
        self._tenant_id = tenant_id
        self._accounts = TenantBillingRepository(session, tenant_id)

    async def _ensure_customer(self, record: TenantBillingTable, email: str | None) -> str:
        """Return the tenant's Stripe customer, creating and persisting it on first use."""
        if record.external_customer_ref:
            return record.external_customer_ref

        customer_ref = await self._gateway.create_customer(self._tenant_id, email=email)
        if not await self._accounts.bind_customer_ref(customer_ref):
            # A concurrent checkout bound a customer first; use that one.
            current = await self._accounts.require()
            logger.warning(
                "Tenant=%s already bound to %s; discarding customer %s",
                self._tenant_id,
                current.external_customer_ref,
                customer_ref,
            )
            return str(current.external_customer_ref)

        await self._session.commit()
        await set_tenant_context(self._session, self._tenant_id)
        return customer_ref

    async def _create_session(self, kind: str, params: dict[str, Any]) -> dict[str, str]:
        try:
            created = await self._gateway.create_checkout_session(params)
        except BillingError:
            CHECKOUT_SESSIONS_TOTAL.labels(kind=kind, outcome="error").inc()
            raise
        CHECKOUT_SESSIONS_TOTAL.labels(kind=kind, outcome="created").inc()
        return created

    def _urls(self) -> tuple[str, str]:
        base = self._settings.frontend_url.rstrip("/")
        return (
            f"{base}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            f"{base}/billing/cancel",
        )

    # ------------------------------------------------------------------
    # Upgrade checkout
    # ------------------------------------------------------------------

    async def start_upgrade_checkout(
        self,
        target_plan: str | PlanName,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        email: str | None = None,
    ) -> dict[str, Any]:
        """Create a subscription checkout for a higher self-serve plan.

        Raises
        ------
        InvalidUpgradePath
            If *target_plan* is unknown, Enterprise, or not above the
            current plan.
        ExternalProcessorUnavailable
            If Stripe cannot be reached within the retry budget.
        """
        record = await self._accounts.require()
        current = parse_plan_name(record.current_plan) or PlanName.FREE
        target = parse_plan_name(target_plan)
        if target is None:
            raise InvalidUpgradePath(current, str(target_plan), f"Unknown plan {target_plan!r}")
        if target is PlanName.ENTERPRISE:
            raise InvalidUpgradePath(current, target.value, "Enterprise plans require contacting sales")

        limits = lookup_plan(target)
        if limits.tier <= lookup_plan(current).tier:
            raise InvalidUpgradePath(
                current,
                target.value,
                f"Cannot upgrade from {current.value} to {target.value}",
            )

        price = limits.yearly_price if billing_cycle is BillingCycle.YEARLY else limits.monthly_price
        assert price is not None  # noqa: S101
        customer_ref = await self._ensure_customer(record, email)

        metadata = {
            "tenant_id": self._tenant_id,
            "plan_name": target.value,
            "billing_cycle": billing_cycle.value,
        }
        price_id = self._settings.price_id_for(target, billing_cycle)
        if price_id:
            line_item: dict[str, Any] = {"price": price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": self._settings.currency,
                    "product_data": {"name": f"{target.value} plan", "description": limits.description},
                    "unit_amount": _cents(price),
                    "recurring": {"interval": "year" if billing_cycle is BillingCycle.YEARLY else "month"},
                },
                "quantity": 1,
            }

        success_url, cancel_url = self._urls()
        created = await self._create_session(
            "subscription",
            {
                "mode": "subscription",
                "customer": customer_ref,
                "client_reference_id": self._tenant_id,
                "line_items": [line_item],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
            },
        )
        logger.info(
            "Started %s checkout tenant=%s %s -> %s session=%s",
            billing_cycle.value,
            self._tenant_id,
            current.value,
            target.value,
            created["session_id"],
        )
        return {
            **created,
            "plan": target.value,
            "billing_cycle": billing_cycle.value,
            "amount": str(price),
        }

    # ------------------------------------------------------------------
    # Credit purchase checkout
    # ------------------------------------------------------------------

    async def start_credit_purchase_checkout(
        self,
        amount: int | Decimal,
        *,
        email: str | None = None,
    ) -> dict[str, Any]:
        """Create a one-off payment checkout for prepaid credits.

        The credit quantity returned is for display; the grant happens when
        the payment is confirmed.

        Raises
        ------
        ValueError
            If *amount* buys no credits.
        InvalidPlanChange
            If the tenant already has unlimited credits.
        """
        credits = credits_for_payment(amount)
        if credits <= 0:
            raise ValueError(f"Purchase amount must be at least 1 {self._settings.currency.upper()}")

        record = await self._accounts.require()
        if record.credit_balance == UNLIMITED_CREDITS:
            raise InvalidPlanChange("Your plan includes unlimited credits; no purchase is needed")

        customer_ref = await self._ensure_customer(record, email)
        whole_amount = int(Decimal(amount))
        success_url, cancel_url = self._urls()
        created = await self._create_session(
            CREDIT_PURCHASE_TYPE,
            {
                "mode": "payment",
                "customer": customer_ref,
                "client_reference_id": self._tenant_id,
                "line_items": [
                    {
                        "price_data": {
                            "currency": self._settings.currency,
                            "product_data": {"name": f"{credits} AI credits"},
                            "unit_amount": whole_amount * 100,
                        },
                        "quantity": 1,
                    }
                ],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": {
                    "tenant_id": self._tenant_id,
                    "type": CREDIT_PURCHASE_TYPE,
                    "amount": str(whole_amount),
                    "credits_amount": str(credits),
                },
            },
        )
        logger.info(
            "Started credit purchase checkout tenant=%s amount=%d credits=%d session=%s",
            self._tenant_id,
            whole_amount,
            credits,
            created["session_id"],
        )
        return {**created, "amount": str(whole_amount), "credits": credits}

    # ------------------------------------------------------------------
    # Portal
    # ------------------------------------------------------------------

    async def create_portal_session(self, return_url: str | None = None) -> dict[str, str]:
        """Open the customer portal for payment method and invoice management."""
        record = await self._accounts.require()
        if not record.external_customer_ref:
            raise PaymentAccountMissing(self._tenant_id)
        url = await self._gateway.create_portal_session(
            record.external_customer_ref,
            return_url or f"{self._settings.frontend_url.rstrip('/')}/billing",
        )
        return {"url": url}
