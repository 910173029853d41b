"""State persistence layer for tenant billing."""

from ledger_core.state.database import get_engine, set_tenant_context, validate_tenant_id
from ledger_core.state.repository import (
    BillingDirectoryRepository,
    BillingHistoryRepository,
    CreditTransactionRepository,
    TenantBillingRepository,
    WebhookEventRepository,
)

__all__ = [
    "BillingDirectoryRepository",
    "BillingHistoryRepository",
    "CreditTransactionRepository",
    "TenantBillingRepository",
    "WebhookEventRepository",
    "get_engine",
    "set_tenant_context",
    "validate_tenant_id",
]
