"""Billing core tables

Revision ID: 001_billing_core
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_billing_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_STAGE_PREDICATE = "delivery_status IN ('pending', 'sent')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Leases (rent terms mirrored from the property-management service)
    op.create_table(
        "leases",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=False),
        sa.Column("tenant_user_id", sa.BigInteger(), nullable=False),
        sa.Column("tenant_phone", sa.String(50), nullable=True),
        sa.Column("monthly_rent", sa.Numeric(15, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("rent_paid_until", sa.Date(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_leases"),
    )
    op.create_index("ix_leases_organization_id", "leases", ["organization_id"])
    op.create_index("ix_leases_tenant_user_id", "leases", ["tenant_user_id"])
    op.create_index("ix_leases_status", "leases", ["status"])

    # Invoices
    op.create_table(
        "invoices",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=False),
        sa.Column("lease_id", sa.BigInteger(), nullable=False),
        sa.Column("invoice_type", sa.String(20), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("is_overdue", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("months_covered", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_by_payment_id", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_invoices"),
        sa.ForeignKeyConstraint(
            ["lease_id"], ["leases.id"], name="fk_invoices_lease_id_leases"
        ),
        sa.UniqueConstraint(
            "lease_id", "invoice_type", "period_start", name="uq_invoices_lease_type_period"
        ),
    )
    op.create_index("ix_invoices_organization_id", "invoices", ["organization_id"])
    op.create_index("ix_invoices_lease_id", "invoices", ["lease_id"])
    op.create_index("ix_invoices_invoice_type", "invoices", ["invoice_type"])
    op.create_index("ix_invoices_due_date", "invoices", ["due_date"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    op.create_index("ix_invoices_paid_by_payment_id", "invoices", ["paid_by_payment_id"])

    # Payments
    op.create_table(
        "payments",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=False),
        sa.Column("invoice_id", sa.BigInteger(), nullable=True),
        sa.Column("lease_id", sa.BigInteger(), nullable=True),
        sa.Column("tenant_user_id", sa.BigInteger(), nullable=False),
        sa.Column("amount_paid", sa.Numeric(15, 2), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("months_paid", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("verified_by", sa.BigInteger(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("external_reference", sa.String(100), nullable=True),
        sa.Column("checkout_request_id", sa.String(100), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_status_check", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_status", sa.String(255), nullable=True),
        sa.Column("auto_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_payments"),
        sa.ForeignKeyConstraint(
            ["invoice_id"], ["invoices.id"], name="fk_payments_invoice_id_invoices"
        ),
        sa.ForeignKeyConstraint(["lease_id"], ["leases.id"], name="fk_payments_lease_id_leases"),
    )
    for column in (
        "organization_id",
        "invoice_id",
        "lease_id",
        "tenant_user_id",
        "payment_method",
        "status",
        "external_reference",
        "checkout_request_id",
        "needs_review",
    ):
        op.create_index(f"ix_payments_{column}", "payments", [column])

    # Reminders
    op.create_table(
        "reminders",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=False),
        sa.Column("lease_id", sa.BigInteger(), nullable=False),
        sa.Column("invoice_id", sa.BigInteger(), nullable=True),
        sa.Column("tenant_user_id", sa.BigInteger(), nullable=False),
        sa.Column("reminder_type", sa.String(50), nullable=False),
        sa.Column("stage", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("template_key", sa.String(50), nullable=False),
        sa.Column("recipient", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("scheduled_for", sa.Date(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_status", sa.String(20), nullable=False),
        sa.Column("provider_message_id", sa.String(100), nullable=True),
        sa.Column("delivery_report", sa.String(50), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_reminders"),
        sa.ForeignKeyConstraint(["lease_id"], ["leases.id"], name="fk_reminders_lease_id_leases"),
        sa.ForeignKeyConstraint(
            ["invoice_id"], ["invoices.id"], name="fk_reminders_invoice_id_invoices"
        ),
    )
    op.create_index("ix_reminders_organization_id", "reminders", ["organization_id"])
    op.create_index("ix_reminders_lease_id", "reminders", ["lease_id"])
    op.create_index("ix_reminders_invoice_id", "reminders", ["invoice_id"])
    op.create_index("ix_reminders_delivery_status", "reminders", ["delivery_status"])
    op.create_index(
        "uq_reminders_active_stage",
        "reminders",
        ["lease_id", "period_start", "reminder_type", "stage"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_STAGE_PREDICATE),
        sqlite_where=sa.text(ACTIVE_STAGE_PREDICATE),
    )

    # Billing settings (one row per organization, seeded lazily)
    op.create_table(
        "billing_settings",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=False),
        sa.Column("auto_verify_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auto_verify_frequency_seconds", sa.Integer(), nullable=False, server_default="30"
        ),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("query_timeout_seconds", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("last_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_test_status", sa.String(255), nullable=True),
        sa.Column("updated_by", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_billing_settings"),
        sa.UniqueConstraint("organization_id", name="uq_billing_settings_organization"),
    )

    # Gateway status queries and callbacks
    op.create_table(
        "mpesa_verification_audit",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=False),
        sa.Column("payment_id", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("checkout_request_id", sa.String(100), nullable=True),
        sa.Column("result_code", sa.String(20), nullable=True),
        sa.Column("result_description", sa.Text(), nullable=True),
        sa.Column("transaction_status", sa.String(20), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "raw_response",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=True,
        ),
        sa.Column(
            "queried_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_mpesa_verification_audit"),
        sa.ForeignKeyConstraint(
            ["payment_id"],
            ["payments.id"],
            name="fk_mpesa_verification_audit_payment_id_payments",
        ),
    )
    op.create_index(
        "ix_mpesa_verification_audit_organization_id",
        "mpesa_verification_audit",
        ["organization_id"],
    )
    op.create_index(
        "ix_mpesa_verification_audit_payment_id", "mpesa_verification_audit", ["payment_id"]
    )
    op.create_index(
        "ix_mpesa_verification_audit_queried_at", "mpesa_verification_audit", ["queried_at"]
    )

    # Audit log
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.BigInteger(), nullable=True),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
    )
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("mpesa_verification_audit")
    op.drop_table("billing_settings")
    op.drop_index("uq_reminders_active_stage", table_name="reminders")
    op.drop_table("reminders")
    op.drop_table("payments")
    op.drop_table("invoices")
    op.drop_table("leases")
