"""Create tenant billing, credit ledger, billing history and webhook journal.

Revision ID: 001
Revises:
Create Date: 2025-10-06 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES = ("tenant_billing", "credit_transactions", "billing_history")


def upgrade() -> None:
    op.create_table(
        "tenant_billing",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("current_plan", sa.String(32), nullable=False, server_default="Free"),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="ACTIVE"),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_docs_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_plan", sa.String(32), nullable=True),
        sa.Column("pending_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_reason", sa.String(256), nullable=True),
        sa.Column("external_customer_ref", sa.String(256), nullable=True),
        sa.Column("external_subscription_ref", sa.String(256), nullable=True),
        sa.Column("billing_cycle", sa.String(16), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_credit_refill_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sms_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "credit_balance >= 0 OR credit_balance = -1",
            name="ck_tenant_billing_balance_non_negative",
        ),
        sa.CheckConstraint(
            "(pending_plan IS NULL AND pending_effective_at IS NULL AND pending_reason IS NULL) "
            "OR (pending_plan IS NOT NULL AND pending_effective_at IS NOT NULL)",
            name="ck_tenant_billing_pending_consistent",
        ),
        sa.CheckConstraint(
            "current_plan IN ('Free', 'Starter', 'Professional', 'Enterprise')",
            name="ck_tenant_billing_plan",
        ),
        sa.CheckConstraint(
            "subscription_status IN ('ACTIVE', 'PAST_DUE', 'CANCELED', 'INCOMPLETE', 'TRIALING')",
            name="ck_tenant_billing_status",
        ),
    )
    op.create_index(
        "ix_tenant_billing_customer_ref",
        "tenant_billing",
        ["external_customer_ref"],
        unique=True,
    )
    op.create_index("ix_tenant_billing_pending_effective", "tenant_billing", ["pending_effective_at"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("related_document_id", sa.String(64), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("balance_after = balance_before + amount", name="ck_credit_transactions_arithmetic"),
        sa.CheckConstraint(
            "type IN ('USED', 'REFILL', 'PURCHASE', 'BONUS', 'ADJUSTMENT')",
            name="ck_credit_transactions_type",
        ),
        sa.UniqueConstraint("tenant_id", "sequence", name="uq_credit_transactions_tenant_sequence"),
    )
    op.create_index(
        "ix_credit_transactions_tenant_created",
        "credit_transactions",
        ["tenant_id", "created_at"],
    )
    op.create_index("ix_credit_transactions_type", "credit_transactions", ["type"])

    op.create_table(
        "billing_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("invoice_number", sa.String(128), nullable=False, unique=True),
        sa.Column("plan", sa.String(32), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PAID"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_invoice_ref", sa.String(256), nullable=True, unique=True),
        sa.Column("external_payment_ref", sa.String(256), nullable=True),
        sa.Column("external_event_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_billing_history_amount_non_negative"),
        sa.CheckConstraint("status IN ('PAID', 'FAILED')", name="ck_billing_history_status"),
    )
    op.create_index(
        "ix_billing_history_tenant_created",
        "billing_history",
        ["tenant_id", "created_at"],
    )

    op.create_table(
        "webhook_events",
        sa.Column("external_event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('processed', 'ignored', 'failed')",
            name="ck_webhook_events_status",
        ),
    )
    op.create_index("ix_webhook_events_tenant", "webhook_events", ["tenant_id"])

    # Tenant-scoped tables are isolated by RLS.  The webhook journal and the
    # customer-ref lookup run before a tenant is known and use the service
    # role, which bypasses RLS.
    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {table} "
            "USING (tenant_id = current_setting('app.tenant_id', true))"
        )


def downgrade() -> None:
    for table in _TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
    op.drop_index("ix_webhook_events_tenant")
    op.drop_table("webhook_events")
    op.drop_index("ix_billing_history_tenant_created")
    op.drop_table("billing_history")
    op.drop_index("ix_credit_transactions_type")
    op.drop_index("ix_credit_transactions_tenant_created")
    op.drop_table("credit_transactions")
    op.drop_index("ix_tenant_billing_pending_effective")
    op.drop_index("ix_tenant_billing_customer_ref")
    op.drop_table("tenant_billing")
