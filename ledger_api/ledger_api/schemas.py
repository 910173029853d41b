"""Request and response models for the billing API.

Domain results (``CreditMutation``, ``PlanChangeResult``,
``LimitCheckResult``) are returned as-is; the models here cover request
bodies and the responses that have no domain counterpart.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from ledger_core.billing.catalog import ResourceType
from ledger_core.billing.models import BillingCycle, TransactionType

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class PlanResponse(BaseModel):
    """A plan tier as shown on the pricing page."""

    name: str
    tier: int
    description: str
    monthly_price: Decimal | None = None
    yearly_price: Decimal | None = None
    max_drivers: int | None = None
    max_documents_per_driver: int | None = None
    initial_credits: int | None = None
    monthly_credits: int | None = None
    credits_rollover: bool
    features: list[str]
    popular: bool = False
    contact_sales: bool = False


class CreditPriceResponse(BaseModel):
    per_credit: float
    credits_per_unit: int
    presets: list[dict[str, int]]


class PlansResponse(BaseModel):
    """Response for ``GET /billing/plans``."""

    catalog_version: str
    plans: list[PlanResponse]
    credit_price: CreditPriceResponse


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class UpgradeRequest(BaseModel):
    """Request body for ``POST /billing/upgrade``."""

    plan: str = Field(..., description="Target plan name, e.g. 'Starter'.")
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    email: str | None = Field(default=None, description="Pre-fills the Stripe customer email.")


class PurchaseCreditsRequest(BaseModel):
    """Request body for ``POST /billing/purchase-credits``."""

    amount: int = Field(..., gt=0, description="Whole currency units to spend.")
    email: str | None = None


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str
    amount: str
    plan: str | None = None
    billing_cycle: str | None = None
    credits: int | None = None


class PortalRequest(BaseModel):
    """Request body for ``POST /billing/portal``."""

    return_url: str | None = Field(
        default=None,
        description="URL to return to after leaving the Stripe portal.",
    )


class PortalSessionResponse(BaseModel):
    url: str


# ---------------------------------------------------------------------------
# Plan changes
# ---------------------------------------------------------------------------


class DowngradeRequest(BaseModel):
    """Request body for ``POST /billing/downgrade``."""

    plan: str
    reason: str = Field(default="User initiated downgrade", max_length=500)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class DeductRequest(BaseModel):
    """Request body for ``POST /billing/credits/deduct``."""

    amount: int = Field(default=1, gt=0)
    document_id: str | None = Field(default=None, max_length=64)
    reason: str | None = Field(default=None, max_length=500)


class CreditTransactionResponse(BaseModel):
    id: str
    sequence: int
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    reason: str | None = None
    related_document_id: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: str


class CreditTransactionListResponse(BaseModel):
    transactions: list[CreditTransactionResponse]
    limit: int
    offset: int


class BillingHistoryResponse(BaseModel):
    id: str
    invoice_number: str
    plan: str | None = None
    amount: Decimal
    status: str
    paid_at: str | None = None
    billing_period_start: str | None = None
    billing_period_end: str | None = None


class BillingHistoryListResponse(BaseModel):
    invoices: list[BillingHistoryResponse]


class LedgerVerificationResponse(BaseModel):
    tenant_id: str
    valid: bool
    transactions_checked: int
    replayed_balance: int
    stored_balance: int
    first_break: int | None = None


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


class CheckLimitRequest(BaseModel):
    """Request body for ``POST /billing/check-limit``."""

    resource: ResourceType
    driver_id: str | None = None
    amount: int | None = Field(default=None, gt=0)

    def context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {}
        if self.driver_id is not None:
            ctx["driver_id"] = self.driver_id
        if self.amount is not None:
            ctx["amount"] = self.amount
        return ctx


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookAckResponse(BaseModel):
    received: bool = True
    status: str
    event_id: str | None = None
