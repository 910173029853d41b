"""Plan catalog, domain models and typed billing errors."""

from ledger_core.billing.catalog import (
    CATALOG_VERSION,
    Feature,
    PlanLimits,
    PlanName,
    lookup_plan,
)
from ledger_core.billing.errors import (
    BillingError,
    DowngradeBlocked,
    ExternalProcessorUnavailable,
    InsufficientCredits,
    InvalidPlanChange,
    InvalidSignature,
    InvalidUpgradePath,
    LedgerConflict,
    PaymentAccountMissing,
    UnknownTenant,
)

__all__ = [
    "BillingError",
    "CATALOG_VERSION",
    "DowngradeBlocked",
    "ExternalProcessorUnavailable",
    "Feature",
    "InsufficientCredits",
    "InvalidPlanChange",
    "InvalidSignature",
    "InvalidUpgradePath",
    "LedgerConflict",
    "PaymentAccountMissing",
    "PlanLimits",
    "PlanName",
    "UnknownTenant",
    "lookup_plan",
]
