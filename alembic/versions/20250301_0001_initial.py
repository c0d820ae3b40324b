"""Tenants, Xero-synced records and webhook event log

Revision ID: 20250301_0001
Revises:
Create Date: 2025-03-01 09:00:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20250301_0001"
down_revision = None
branch_labels = None
depends_on = None


sync_status_enum = sa.Enum(
    "unsynced",
    "synced",
    "failed",
    name="xero_sync_status_enum",
    native_enum=False,
)

invoice_status_enum = sa.Enum(
    "DRAFT",
    "SENT",
    "PAID",
    "VOID",
    "OVERDUE",
    "SCHEDULED",
    name="invoice_status_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _sync_columns(external_id: str) -> list[sa.Column]:
    return [
        sa.Column(external_id, sa.String(length=64), nullable=True),
        sa.Column("xero_sync_status", sync_status_enum, nullable=False, server_default="unsynced"),
        sa.Column("xero_sync_error", sa.String(length=500), nullable=True),
        sa.Column("xero_synced_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _tenant_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE")


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)

    op.create_table(
        "tenants",
        sa.Column("id", guid, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("xero_tenant_id", sa.String(length=64), nullable=True),
        sa.Column("xero_access_token_enc", sa.Text(), nullable=True),
        sa.Column("xero_refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("xero_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("xero_webhook_key", sa.String(length=255), nullable=True),
        sa.Column("xero_default_payment_account_code", sa.String(length=32), nullable=True),
        sa.Column("credential_version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("xero_tenant_id", name="uq_tenants_xero_tenant_id"),
    )

    op.create_table(
        "students",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("first_name", sa.String(length=255), nullable=False),
        sa.Column("last_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("mobile_phone", sa.String(length=64), nullable=True),
        sa.Column("work_phone", sa.String(length=64), nullable=True),
        sa.Column("street_address", sa.String(length=500), nullable=True),
        sa.Column("suburb", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=100), nullable=True),
        sa.Column("postcode", sa.String(length=20), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=True),
        *_sync_columns("xero_contact_id"),
        *_timestamps(),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_students_tenant_xero_contact", "students", ["tenant_id", "xero_contact_id"])

    op.create_table(
        "programs",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=True),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "payment_plan_templates",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("xero_account_code", sa.String(length=32), nullable=True),
        sa.Column("xero_item_code", sa.String(length=64), nullable=True),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "enrollments",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("student_id", guid, nullable=False),
        sa.Column("program_id", guid, nullable=True),
        sa.Column("payment_plan_template_id", guid, nullable=True),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["payment_plan_template_id"],
            ["payment_plan_templates.id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("enrollment_id", guid, nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("status", invoice_status_enum, nullable=False, server_default="DRAFT"),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount_due_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False, server_default="0"),
        *_sync_columns("xero_invoice_id"),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_tenant_xero_invoice", "invoices", ["tenant_id", "xero_invoice_id"])
    op.create_index("ix_invoices_status_sync", "invoices", ["status", "xero_sync_status"])

    op.create_table(
        "invoice_lines",
        sa.Column("id", guid, nullable=False),
        sa.Column("invoice_id", guid, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sequence_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("xero_account_code", sa.String(length=32), nullable=True),
        sa.Column("xero_item_code", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])

    op.create_table(
        "payments",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("invoice_id", guid, nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        *_sync_columns("xero_payment_id"),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "xero_payment_id", name="uq_payments_tenant_xero_payment"),
    )

    op.create_table(
        "xero_webhook_events",
        sa.Column("id", guid, nullable=False),
        sa.Column("tenant_id", guid, nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_category", sa.String(length=64), nullable=False),
        sa.Column("event_date_utc", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        _tenant_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "resource_id",
            "event_type",
            "event_date_utc",
            name="uq_xero_webhook_event",
        ),
    )
    op.create_index(
        "ix_xero_webhook_events_unprocessed",
        "xero_webhook_events",
        ["tenant_id", "processed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_xero_webhook_events_unprocessed", table_name="xero_webhook_events")
    op.drop_table("xero_webhook_events")
    op.drop_table("payments")
    op.drop_index("ix_invoice_lines_invoice_id", table_name="invoice_lines")
    op.drop_table("invoice_lines")
    op.drop_index("ix_invoices_status_sync", table_name="invoices")
    op.drop_index("ix_invoices_tenant_xero_invoice", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("enrollments")
    op.drop_table("payment_plan_templates")
    op.drop_table("programs")
    op.drop_index("ix_students_tenant_xero_contact", table_name="students")
    op.drop_table("students")
    op.drop_table("tenants")
