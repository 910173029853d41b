"""Typed billing errors.

Each error names the invariant it protects and carries enough structure
for the caller to offer a recovery action (buy credits, reduce usage,
pick another plan).  The HTTP layer maps ``status_code`` and
``to_dict()`` straight onto the response.
"""

from __future__ import annotations

from typing import Any

from ledger_core.billing.catalog import (
    CREDIT_PURCHASE_PRESETS,
    CREDITS_PER_CURRENCY_UNIT,
    LimitViolation,
    PlanName,
)


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code: str = "BILLING_ERROR"
    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InsufficientCredits(BillingError):
    """The tenant's balance cannot cover a deduction."""

    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, tenant_id: str, required: int, available: int) -> None:
        super().__init__(f"Insufficient credits: {required} required, {available} available")
        self.tenant_id = tenant_id
        self.required = required
        self.available = available

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "required": self.required,
                "available": self.available,
                "credit_price": {
                    "per_credit": 1 / CREDITS_PER_CURRENCY_UNIT,
                    "recommended": list(CREDIT_PURCHASE_PRESETS),
                },
            }
        )
        return payload


class DowngradeBlocked(BillingError):
    """Current usage exceeds the caps of the requested cheaper plan."""

    code = "DOWNGRADE_BLOCKED"
    status_code = 409

    def __init__(self, target_plan: PlanName, violations: list[LimitViolation]) -> None:
        super().__init__(f"Cannot downgrade to {target_plan.value}: usage exceeds plan limits")
        self.target_plan = target_plan
        self.violations = violations

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["target_plan"] = self.target_plan.value
        payload["violations"] = [v.model_dump(mode="json") for v in self.violations]
        return payload


class InvalidUpgradePath(BillingError):
    """Upgrade target is not above the current plan or is not self-serve."""

    code = "INVALID_UPGRADE_PATH"

    def __init__(self, current_plan: PlanName, target_plan: str, reason: str) -> None:
        super().__init__(reason)
        self.current_plan = current_plan
        self.target_plan = target_plan

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["current_plan"] = self.current_plan.value
        payload["target_plan"] = self.target_plan
        return payload


class InvalidPlanChange(BillingError):
    """A downgrade or cancellation request that does not fit the current state."""

    code = "INVALID_PLAN_CHANGE"


class InvalidSignature(BillingError):
    """Webhook payload could not be authenticated."""

    code = "INVALID_SIGNATURE"


class UnknownTenant(BillingError):
    """No active billing record matches the tenant or external reference."""

    code = "UNKNOWN_TENANT"
    status_code = 404

    def __init__(self, reference: str | None) -> None:
        super().__init__(f"No billing record for {reference!r}")
        self.reference = reference


class PaymentAccountMissing(BillingError):
    """The tenant has never been registered with the payment processor."""

    code = "NO_PAYMENT_ACCOUNT"

    def __init__(self, tenant_id: str) -> None:
        super().__init__("No billing account found; subscribe to a plan first")
        self.tenant_id = tenant_id


class LedgerConflict(BillingError):
    """A compare-and-swap on the balance lost to a concurrent mutation."""

    code = "LEDGER_CONFLICT"
    status_code = 409


class ExternalProcessorUnavailable(BillingError):
    """The payment processor timed out or refused the request."""

    code = "PAYMENT_PROCESSOR_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
        if not retryable:
            self.status_code = 502

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retryable"] = self.retryable
        return payload
