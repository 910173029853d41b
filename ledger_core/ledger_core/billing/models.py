"""Domain models for tenant billing state, ledger mutations and limit checks.

The plan state of a tenant is a tagged variant rather than two
independently nullable fields: a tenant is either ``Stable`` on a plan or
has exactly one ``DowngradePending`` towards a cheaper plan.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from ledger_core.billing.catalog import LimitViolation, PlanName, ResourceType

# Balance value representing unlimited credits.
UNLIMITED_CREDITS = -1

# Length of the window between a downgrade request and its execution.
DOWNGRADE_GRACE_DAYS = 7

# Days added to ``next_billing_date`` when a plan is (re)entered.
BILLING_CYCLE_DAYS = 30


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle state mirrored from the payment processor."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    TRIALING = "TRIALING"


class TransactionType(str, Enum):
    """Kind of credit ledger mutation."""

    USED = "USED"
    REFILL = "REFILL"
    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    ADJUSTMENT = "ADJUSTMENT"


class BillingStatus(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class WebhookEventStatus(str, Enum):
    """Outcome recorded in the webhook event journal."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Plan state
# ---------------------------------------------------------------------------


class Stable(BaseModel):
    """Tenant is on *plan* with no scheduled change."""

    kind: Literal["stable"] = "stable"
    plan: PlanName


class DowngradePending(BaseModel):
    """Tenant is on *current_plan* and moves to *target_plan* at *effective_at*."""

    kind: Literal["downgrade_pending"] = "downgrade_pending"
    current_plan: PlanName
    target_plan: PlanName
    effective_at: datetime
    reason: str | None = None


PlanState = Annotated[Stable | DowngradePending, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class CreditMutation(BaseModel):
    """Outcome of a credit ledger operation.

    ``applied`` is ``False`` when the operation was a no-op (unlimited
    tenants, or a refill on a plan without a monthly allotment).  In that
    case no transaction row is written and ``transaction_id`` is ``None``.
    """

    tenant_id: str
    type: TransactionType
    applied: bool = True
    unlimited: bool = False
    amount: int = 0
    balance_before: int | None = None
    balance_after: int | None = None
    transaction_id: str | None = None
    message: str | None = None


class PlanChangeResult(BaseModel):
    """Outcome of a plan state machine transition."""

    tenant_id: str
    applied: bool = True
    previous_plan: PlanName
    plan: PlanName
    status: SubscriptionStatus
    credit_change: CreditMutation | None = None
    pending: DowngradePending | None = None
    message: str | None = None


class LimitCheckResult(BaseModel):
    """Structured answer to "may the tenant perform this action?"."""

    resource: ResourceType | None = None
    allowed: bool
    unlimited: bool = False
    current: int = 0
    limit: int | None = None
    remaining: int | None = None
    message: str | None = None
    error_code: str | None = None
    current_plan: PlanName | None = None
    next_tier: PlanName | None = None
    upgrade_required: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "BILLING_CYCLE_DAYS",
    "BillingCycle",
    "BillingStatus",
    "CreditMutation",
    "DOWNGRADE_GRACE_DAYS",
    "DowngradePending",
    "LimitCheckResult",
    "LimitViolation",
    "PlanChangeResult",
    "PlanState",
    "Stable",
    "SubscriptionStatus",
    "TransactionType",
    "UNLIMITED_CREDITS",
    "WebhookEventStatus",
]
