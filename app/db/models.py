from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class SyncStatus(str):
    UNSYNCED = "unsynced"
    SYNCED = "synced"
    FAILED = "failed"


class InvoiceStatus(str):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    VOID = "VOID"
    OVERDUE = "OVERDUE"
    SCHEDULED = "SCHEDULED"


def _sync_status_column() -> Mapped[str]:
    return mapped_column(
        Enum(
            SyncStatus.UNSYNCED,
            SyncStatus.SYNCED,
            SyncStatus.FAILED,
            name="xero_sync_status_enum",
            native_enum=False,
        ),
        default=SyncStatus.UNSYNCED,
        nullable=False,
    )


def _created_at_column() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


def _updated_at_column() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Tenants(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        UniqueConstraint("xero_tenant_id", name="uq_tenants_xero_tenant_id"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    xero_tenant_id: Mapped[Optional[str]] = mapped_column(String(64))
    xero_access_token_enc: Mapped[Optional[str]] = mapped_column(Text)
    xero_refresh_token_enc: Mapped[Optional[str]] = mapped_column(Text)
    xero_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    xero_webhook_key: Mapped[Optional[str]] = mapped_column(String(255))
    xero_default_payment_account_code: Mapped[Optional[str]] = mapped_column(String(32))
    credential_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = _created_at_column()
    updated_at: Mapped[datetime] = _updated_at_column()


class Students(Base):
    __tablename__ = "students"
    __table_args__ = (
        Index("ix_students_tenant_xero_contact", "tenant_id", "xero_contact_id"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    mobile_phone: Mapped[Optional[str]] = mapped_column(String(64))
    work_phone: Mapped[Optional[str]] = mapped_column(String(64))
    street_address: Mapped[Optional[str]] = mapped_column(String(500))
    suburb: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    postcode: Mapped[Optional[str]] = mapped_column(String(20))
    country: Mapped[Optional[str]] = mapped_column(String(100))

    xero_contact_id: Mapped[Optional[str]] = mapped_column(String(64))
    xero_sync_status: Mapped[str] = _sync_status_column()
    xero_sync_error: Mapped[Optional[str]] = mapped_column(String(500))
    xero_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at_column()
    updated_at: Mapped[datetime] = _updated_at_column()


class Programs(Base):
    __tablename__ = "programs"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(64))


class PaymentPlanTemplates(Base):
    __tablename__ = "payment_plan_templates"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    xero_account_code: Mapped[Optional[str]] = mapped_column(String(32))
    xero_item_code: Mapped[Optional[str]] = mapped_column(String(64))


class Enrollments(Base):
    __tablename__ = "enrollments"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
    )
    program_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("programs.id", ondelete="SET NULL"),
    )
    payment_plan_template_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("payment_plan_templates.id", ondelete="SET NULL"),
    )


class Invoices(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_tenant_xero_invoice", "tenant_id", "xero_invoice_id"),
        Index("ix_invoices_status_sync", "status", "xero_sync_status"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(
            InvoiceStatus.DRAFT,
            InvoiceStatus.SENT,
            InvoiceStatus.PAID,
            InvoiceStatus.VOID,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.SCHEDULED,
            name="invoice_status_enum",
            native_enum=False,
        ),
        default=InvoiceStatus.DRAFT,
        nullable=False,
    )
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_due_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    xero_invoice_id: Mapped[Optional[str]] = mapped_column(String(64))
    xero_sync_status: Mapped[str] = _sync_status_column()
    xero_sync_error: Mapped[Optional[str]] = mapped_column(String(500))
    xero_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at_column()
    updated_at: Mapped[datetime] = _updated_at_column()


class InvoiceLines(Base):
    __tablename__ = "invoice_lines"
    __table_args__ = (
        Index("ix_invoice_lines_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sequence_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    xero_account_code: Mapped[Optional[str]] = mapped_column(String(32))
    xero_item_code: Mapped[Optional[str]] = mapped_column(String(64))


class Payments(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "xero_payment_id", name="uq_payments_tenant_xero_payment"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String(500))

    xero_payment_id: Mapped[Optional[str]] = mapped_column(String(64))
    xero_sync_status: Mapped[str] = _sync_status_column()
    xero_sync_error: Mapped[Optional[str]] = mapped_column(String(500))
    xero_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at_column()
    updated_at: Mapped[datetime] = _updated_at_column()


class XeroWebhookEvents(Base):
    __tablename__ = "xero_webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "resource_id",
            "event_type",
            "event_date_utc",
            name="uq_xero_webhook_event",
        ),
        Index("ix_xero_webhook_events_unprocessed", "tenant_id", "processed_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_category: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date_utc: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at_column()
