"""Billing endpoints: catalog, current plan, checkout, plan changes, ledger and limits."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from ledger_api.dependencies import GatewayDep, SessionDep, SettingsDep, TenantDep, UserDep
from ledger_api.middleware.prometheus import record_credit_mutation
from ledger_api.schemas import (
    BillingHistoryListResponse,
    BillingHistoryResponse,
    CheckLimitRequest,
    CheckoutSessionResponse,
    CreditPriceResponse,
    CreditTransactionListResponse,
    DeductRequest,
    DowngradeRequest,
    LedgerVerificationResponse,
    PlanResponse,
    PlansResponse,
    PortalRequest,
    PortalSessionResponse,
    PurchaseCreditsRequest,
    UpgradeRequest,
)
from ledger_api.services.checkout_service import CheckoutService
from ledger_core.billing.catalog import (
    CATALOG_VERSION,
    CREDIT_PURCHASE_PRESETS,
    CREDITS_PER_CURRENCY_UNIT,
    all_plans,
)
from ledger_core.billing.ledger import CreditLedger, provision_tenant
from ledger_core.billing.limits import LimitEnforcer
from ledger_core.billing.models import CreditMutation, LimitCheckResult, PlanChangeResult, TransactionType
from ledger_core.billing.state_machine import PlanStateMachine
from ledger_core.state.repository import BillingHistoryRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def _require_billing(settings: SettingsDep) -> None:
    if not settings.billing_enabled:
        raise HTTPException(status_code=404, detail="Billing is not enabled for this installation.")


# ---------------------------------------------------------------------------
# Catalog and current plan
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=PlansResponse)
async def get_plans() -> PlansResponse:
    """Return every plan tier, cheapest first, with the credit price."""
    plans = [
        PlanResponse(
            name=limits.name.value,
            tier=limits.tier,
            description=limits.description,
            monthly_price=limits.monthly_price,
            yearly_price=limits.yearly_price,
            max_drivers=limits.max_drivers,
            max_documents_per_driver=limits.max_documents_per_driver,
            initial_credits=limits.initial_credits,
            monthly_credits=limits.monthly_credits,
            credits_rollover=limits.credits_rollover,
            features=sorted(feature.value for feature in limits.features),
            popular=limits.popular,
            contact_sales=limits.is_custom_priced,
        )
        for limits in all_plans()
    ]
    return PlansResponse(
        catalog_version=CATALOG_VERSION,
        plans=plans,
        credit_price=CreditPriceResponse(
            per_credit=1 / CREDITS_PER_CURRENCY_UNIT,
            credits_per_unit=CREDITS_PER_CURRENCY_UNIT,
            presets=[dict(preset) for preset in CREDIT_PURCHASE_PRESETS],
        ),
    )


@router.get("/current")
async def get_current_plan(session: SessionDep, tenant_id: TenantDep) -> dict[str, Any]:
    """Return the tenant's plan, usage against caps and any pending downgrade."""
    return await LimitEnforcer(session, tenant_id).usage_summary()


@router.post("/provision", response_model=CreditMutation, status_code=201)
async def provision(session: SessionDep, tenant_id: TenantDep) -> CreditMutation:
    """Create the billing record for a newly registered company on the Free plan."""
    return await provision_tenant(session, tenant_id)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@router.post("/upgrade", response_model=CheckoutSessionResponse)
async def start_upgrade(
    body: UpgradeRequest,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    tenant_id: TenantDep,
) -> dict[str, Any]:
    """Start a Stripe Checkout for a higher plan.

    The plan changes only once Stripe confirms payment through the webhook.
    """
    _require_billing(settings)
    service = CheckoutService(session, settings, gateway, tenant_id=tenant_id)
    return await service.start_upgrade_checkout(body.plan, body.billing_cycle, email=body.email)


@router.post("/purchase-credits", response_model=CheckoutSessionResponse)
async def start_credit_purchase(
    body: PurchaseCreditsRequest,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    tenant_id: TenantDep,
) -> dict[str, Any]:
    """Start a Stripe Checkout for a one-off credit purchase."""
    _require_billing(settings)
    service = CheckoutService(session, settings, gateway, tenant_id=tenant_id)
    return await service.start_credit_purchase_checkout(body.amount, email=body.email)


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    body: PortalRequest,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    tenant_id: TenantDep,
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for payment method management."""
    _require_billing(settings)
    service = CheckoutService(session, settings, gateway, tenant_id=tenant_id)
    return await service.create_portal_session(body.return_url)


# ---------------------------------------------------------------------------
# Plan changes
# ---------------------------------------------------------------------------


@router.post("/downgrade", response_model=PlanChangeResult)
async def request_downgrade(
    body: DowngradeRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user: UserDep,
) -> PlanChangeResult:
    """Schedule a downgrade after the grace period.

    Responds 409 with every violated limit when current usage does not
    fit the target plan.
    """
    logger.info("Downgrade to %s requested by user=%s tenant=%s", body.plan, user, tenant_id)
    return await PlanStateMachine(session, tenant_id).request_downgrade(body.plan, reason=body.reason)


@router.post("/cancel-downgrade", response_model=PlanChangeResult)
async def cancel_downgrade(session: SessionDep, tenant_id: TenantDep) -> PlanChangeResult:
    """Drop the pending downgrade."""
    return await PlanStateMachine(session, tenant_id).cancel_downgrade()


# ---------------------------------------------------------------------------
# History and ledger
# ---------------------------------------------------------------------------


@router.get("/history", response_model=BillingHistoryListResponse)
async def get_billing_history(
    session: SessionDep,
    tenant_id: TenantDep,
    limit: int = Query(default=50, ge=1, le=200),
) -> BillingHistoryListResponse:
    """Return the tenant's paid invoices and credit purchases, newest first."""
    rows = await BillingHistoryRepository(session, tenant_id).list_recent(limit=limit)
    return BillingHistoryListResponse(
        invoices=[
            BillingHistoryResponse(
                id=row.id,
                invoice_number=row.invoice_number,
                plan=row.plan,
                amount=row.amount,
                status=row.status,
                paid_at=row.paid_at.isoformat() if row.paid_at else None,
                billing_period_start=row.billing_period_start.isoformat() if row.billing_period_start else None,
                billing_period_end=row.billing_period_end.isoformat() if row.billing_period_end else None,
            )
            for row in rows
        ]
    )


@router.get("/credit-transactions", response_model=CreditTransactionListResponse)
async def get_credit_transactions(
    session: SessionDep,
    tenant_id: TenantDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    type: TransactionType | None = Query(default=None),
) -> dict[str, Any]:
    """Return ledger entries newest first, optionally filtered by type."""
    transactions = await CreditLedger(session, tenant_id).transactions(limit=limit, offset=offset, type=type)
    return {"transactions": transactions, "limit": limit, "offset": offset}


@router.post("/credits/deduct", response_model=CreditMutation)
async def deduct_credits(body: DeductRequest, session: SessionDep, tenant_id: TenantDep) -> CreditMutation:
    """Spend credits after a successful AI document extraction.

    Called by the CRUD service.  Responds 402 with the credit price when
    the balance is too low; the balance is left untouched.
    """
    mutation = await CreditLedger(session, tenant_id).deduct(
        body.amount,
        document_id=body.document_id,
        reason=body.reason,
    )
    record_credit_mutation(mutation)
    return mutation


@router.get("/ledger/verify", response_model=LedgerVerificationResponse)
async def verify_ledger(session: SessionDep, tenant_id: TenantDep) -> dict[str, Any]:
    """Replay the tenant's ledger and compare it with the stored balance."""
    report = await CreditLedger(session, tenant_id).verify()
    if not report["valid"]:
        logger.error("Ledger verification failed for tenant=%s: %s", tenant_id, report)
    return report


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


@router.post("/check-limit", response_model=LimitCheckResult)
async def check_limit(body: CheckLimitRequest, session: SessionDep, tenant_id: TenantDep) -> LimitCheckResult:
    """Answer whether the tenant may add one more driver, document or spend credits.

    Always 200; ``allowed`` carries the answer together with the usage,
    the cap and the plan to upgrade to.
    """
    return await LimitEnforcer(session, tenant_id).check_limit(body.resource, body.context())
