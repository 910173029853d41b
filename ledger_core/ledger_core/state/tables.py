"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

``tenant_billing`` holds the denormalised current state of every tenant;
``credit_transactions`` and ``billing_history`` are append-only; and
``webhook_events`` is the deduplication journal for the payment
processor's event feed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite drops tzinfo on read; values coming back naive are re-attached
    to UTC so comparisons with ``datetime.now(UTC)`` never raise.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Tenant billing record
# ---------------------------------------------------------------------------


class TenantBillingTable(Base):
    """Current plan, subscription status and credit balance per tenant.

    ``credit_balance`` is never negative except for the ``-1`` unlimited
    sentinel.  ``ledger_sequence`` increments on every balance mutation
    and is copied onto the matching ``credit_transactions`` row.
    """

    __tablename__ = "tenant_billing"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_plan: Mapped[str] = mapped_column(String(32), nullable=False, default="Free")
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="ACTIVE")
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ledger_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_docs_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    pending_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pending_effective_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    pending_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)

    external_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_cycle: Mapped[str | None] = mapped_column(String(16), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    plan_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_credit_refill_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    sms_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "credit_balance >= 0 OR credit_balance = -1",
            name="ck_tenant_billing_balance_non_negative",
        ),
        CheckConstraint(
            "(pending_plan IS NULL AND pending_effective_at IS NULL AND pending_reason IS NULL) "
            "OR (pending_plan IS NOT NULL AND pending_effective_at IS NOT NULL)",
            name="ck_tenant_billing_pending_consistent",
        ),
        CheckConstraint(
            "current_plan IN ('Free', 'Starter', 'Professional', 'Enterprise')",
            name="ck_tenant_billing_plan",
        ),
        CheckConstraint(
            "subscription_status IN ('ACTIVE', 'PAST_DUE', 'CANCELED', 'INCOMPLETE', 'TRIALING')",
            name="ck_tenant_billing_status",
        ),
        Index("ix_tenant_billing_customer_ref", "external_customer_ref", unique=True),
        Index("ix_tenant_billing_pending_effective", "pending_effective_at"),
    )


# ---------------------------------------------------------------------------
# Credit transactions
# ---------------------------------------------------------------------------


class CreditTransactionTable(Base):
    """Immutable credit ledger entry, one per balance mutation.

    The unique ``(tenant_id, sequence)`` pair rejects a second mutation
    computed from an already-consumed ``balance_before``.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_document_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "balance_after = balance_before + amount",
            name="ck_credit_transactions_arithmetic",
        ),
        CheckConstraint(
            "type IN ('USED', 'REFILL', 'PURCHASE', 'BONUS', 'ADJUSTMENT')",
            name="ck_credit_transactions_type",
        ),
        UniqueConstraint("tenant_id", "sequence", name="uq_credit_transactions_tenant_sequence"),
        Index("ix_credit_transactions_tenant_created", "tenant_id", "created_at"),
        Index("ix_credit_transactions_type", "type"),
    )


# ---------------------------------------------------------------------------
# Billing history
# ---------------------------------------------------------------------------


class BillingHistoryTable(Base):
    """Completed charge (subscription invoice or credit purchase)."""

    __tablename__ = "billing_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PAID")
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    external_invoice_ref: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    external_payment_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_billing_history_amount_non_negative"),
        CheckConstraint("status IN ('PAID', 'FAILED')", name="ck_billing_history_status"),
        Index("ix_billing_history_tenant_created", "tenant_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Webhook event journal
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """Deduplication journal for payment processor webhook events."""

    __tablename__ = "webhook_events"

    external_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processed', 'ignored', 'failed')",
            name="ck_webhook_events_status",
        ),
        Index("ix_webhook_events_tenant", "tenant_id"),
    )
