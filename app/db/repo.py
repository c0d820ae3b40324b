from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence, Union

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    Enrollments,
    InvoiceLines,
    Invoices,
    InvoiceStatus,
    PaymentPlanTemplates,
    Payments,
    Programs,
    Students,
    SyncStatus,
    Tenants,
    XeroWebhookEvents,
)


SyncedRecord = Union[Students, Invoices, Payments]

_EXTERNAL_ID_ATTRS: dict[type, str] = {
    Students: "xero_contact_id",
    Invoices: "xero_invoice_id",
    Payments: "xero_payment_id",
}


@dataclass
class InvoiceContext:
    """An invoice together with everything needed to build its Xero payload."""

    invoice: Invoices
    enrollment: Enrollments
    student: Students
    program: Optional[Programs] = None
    template: Optional[PaymentPlanTemplates] = None
    lines: list[InvoiceLines] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_tenant_by_id(session: AsyncSession, tenant_id: uuid.UUID) -> Tenants:
    tenant = await get_tenant_optional(session, tenant_id)
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found",
        )
    return tenant


async def get_tenant_optional(session: AsyncSession, tenant_id: uuid.UUID) -> Optional[Tenants]:
    result = await session.execute(select(Tenants).where(Tenants.id == tenant_id))
    return result.scalar_one_or_none()


async def reload_tenant(session: AsyncSession, tenant_id: uuid.UUID) -> Optional[Tenants]:
    result = await session.execute(
        select(Tenants)
        .where(Tenants.id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_tenant_by_xero_tenant_id(
    session: AsyncSession,
    xero_tenant_id: str,
) -> Optional[Tenants]:
    result = await session.execute(
        select(Tenants).where(Tenants.xero_tenant_id == xero_tenant_id)
    )
    return result.scalar_one_or_none()


async def list_tenants_with_webhook_key(session: AsyncSession) -> Sequence[Tenants]:
    result = await session.execute(
        select(Tenants).where(Tenants.xero_webhook_key.is_not(None))
    )
    return result.scalars().all()


async def update_tenant_credentials(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    expected_version: int,
    access_token_enc: str,
    refresh_token_enc: str,
    expires_at: datetime,
    xero_tenant_id: Optional[str] = None,
) -> bool:
    """Compare-and-swap write of the tenant credential; False when another writer won."""
    values: dict[str, Any] = {
        "xero_access_token_enc": access_token_enc,
        "xero_refresh_token_enc": refresh_token_enc,
        "xero_token_expires_at": expires_at,
        "credential_version": expected_version + 1,
        "updated_at": _now(),
    }
    if xero_tenant_id is not None:
        values["xero_tenant_id"] = xero_tenant_id
    result = await session.execute(
        update(Tenants)
        .where(
            Tenants.id == tenant_id,
            Tenants.credential_version == expected_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def get_student_optional(session: AsyncSession, student_id: uuid.UUID) -> Optional[Students]:
    result = await session.execute(select(Students).where(Students.id == student_id))
    return result.scalar_one_or_none()


async def get_invoice_optional(session: AsyncSession, invoice_id: uuid.UUID) -> Optional[Invoices]:
    result = await session.execute(select(Invoices).where(Invoices.id == invoice_id))
    return result.scalar_one_or_none()


async def get_payment_optional(session: AsyncSession, payment_id: uuid.UUID) -> Optional[Payments]:
    result = await session.execute(select(Payments).where(Payments.id == payment_id))
    return result.scalar_one_or_none()


async def load_invoice_context(session: AsyncSession, invoice: Invoices) -> Optional[InvoiceContext]:
    result = await session.execute(
        select(Enrollments, Students)
        .join(Students, Students.id == Enrollments.student_id)
        .where(Enrollments.id == invoice.enrollment_id)
    )
    row = result.first()
    if row is None:
        return None
    enrollment, student = row

    program = None
    if enrollment.program_id is not None:
        program = await session.get(Programs, enrollment.program_id)
    template = None
    if enrollment.payment_plan_template_id is not None:
        template = await session.get(PaymentPlanTemplates, enrollment.payment_plan_template_id)

    lines_result = await session.execute(
        select(InvoiceLines)
        .where(InvoiceLines.invoice_id == invoice.id)
        .order_by(InvoiceLines.sequence_order)
    )
    return InvoiceContext(
        invoice=invoice,
        enrollment=enrollment,
        student=student,
        program=program,
        template=template,
        lines=list(lines_result.scalars().all()),
    )


async def list_pending_invoices(
    session: AsyncSession,
    *,
    tenant_id: Optional[uuid.UUID] = None,
    limit: int = 100,
) -> Sequence[Invoices]:
    stmt = select(Invoices).where(
        Invoices.status == InvoiceStatus.SENT,
        Invoices.xero_sync_status.in_([SyncStatus.UNSYNCED, SyncStatus.FAILED]),
    )
    if tenant_id is not None:
        stmt = stmt.where(Invoices.tenant_id == tenant_id)
    stmt = stmt.order_by(Invoices.created_at, Invoices.id).limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


async def find_invoices_by_xero_id(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    xero_invoice_id: str,
) -> Sequence[Invoices]:
    result = await session.execute(
        select(Invoices).where(
            Invoices.tenant_id == tenant_id,
            Invoices.xero_invoice_id == xero_invoice_id,
        )
    )
    return result.scalars().all()


async def find_payment_by_xero_id(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    xero_payment_id: str,
) -> Optional[Payments]:
    result = await session.execute(
        select(Payments).where(
            Payments.tenant_id == tenant_id,
            Payments.xero_payment_id == xero_payment_id,
        )
    )
    return result.scalars().first()


async def find_students_by_xero_contact_id(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    xero_contact_id: str,
) -> Sequence[Students]:
    result = await session.execute(
        select(Students).where(
            Students.tenant_id == tenant_id,
            Students.xero_contact_id == xero_contact_id,
        )
    )
    return result.scalars().all()


async def upsert_synced_payment(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    invoice_id: uuid.UUID,
    xero_payment_id: str,
    payment_date: date,
    amount_cents: int,
    notes: Optional[str] = None,
) -> tuple[Payments, bool]:
    """Insert or update the local copy of a Xero payment; returns ``(payment, created)``.

    When a concurrent event inserted the same Xero payment first, the unique
    constraint rejects the insert and the committed row is updated instead.
    Rolling back on that path discards anything else pending in ``session``.
    """
    existing = await find_payment_by_xero_id(
        session, tenant_id=tenant_id, xero_payment_id=xero_payment_id
    )
    if existing is None:
        payment = Payments(
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            payment_date=payment_date,
            amount_cents=amount_cents,
            notes=notes,
            xero_payment_id=xero_payment_id,
            xero_sync_status=SyncStatus.SYNCED,
            xero_synced_at=_now(),
        )
        session.add(payment)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            existing = await find_payment_by_xero_id(
                session, tenant_id=tenant_id, xero_payment_id=xero_payment_id
            )
            if existing is None:
                raise
        else:
            return payment, True

    existing.amount_cents = amount_cents
    existing.payment_date = payment_date
    existing.xero_sync_status = SyncStatus.SYNCED
    existing.xero_sync_error = None
    existing.xero_synced_at = _now()
    await session.flush()
    return existing, False


async def mark_sync_success(
    session: AsyncSession,
    record: SyncedRecord,
    *,
    external_id: str,
) -> None:
    setattr(record, _EXTERNAL_ID_ATTRS[type(record)], external_id)
    record.xero_sync_status = SyncStatus.SYNCED
    record.xero_sync_error = None
    record.xero_synced_at = _now()
    await session.commit()


async def mark_sync_failure(
    session: AsyncSession,
    record: SyncedRecord,
    *,
    error: str,
) -> None:
    record.xero_sync_status = SyncStatus.FAILED
    record.xero_sync_error = error
    await session.commit()


async def get_webhook_event(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    resource_id: str,
    event_type: str,
    event_date_utc: str,
) -> Optional[XeroWebhookEvents]:
    result = await session.execute(
        select(XeroWebhookEvents).where(
            XeroWebhookEvents.tenant_id == tenant_id,
            XeroWebhookEvents.resource_id == resource_id,
            XeroWebhookEvents.event_type == event_type,
            XeroWebhookEvents.event_date_utc == event_date_utc,
        )
    )
    return result.scalar_one_or_none()


async def register_webhook_event(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    resource_id: str,
    event_type: str,
    event_category: str,
    event_date_utc: str,
    payload: Any,
) -> tuple[XeroWebhookEvents, bool]:
    """Insert the event record; returns ``(record, created)``.

    ``created`` is False when the tuple was already recorded, including when a
    concurrent delivery won the insert race.
    """
    existing = await get_webhook_event(
        session,
        tenant_id=tenant_id,
        resource_id=resource_id,
        event_type=event_type,
        event_date_utc=event_date_utc,
    )
    if existing is not None:
        return existing, False

    record = XeroWebhookEvents(
        tenant_id=tenant_id,
        resource_id=resource_id,
        event_type=event_type,
        event_category=event_category,
        event_date_utc=event_date_utc,
        payload=payload,
    )
    session.add(record)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_webhook_event(
            session,
            tenant_id=tenant_id,
            resource_id=resource_id,
            event_type=event_type,
            event_date_utc=event_date_utc,
        )
        if existing is None:
            raise
        return existing, False
    return record, True


async def mark_event_processed(session: AsyncSession, record: XeroWebhookEvents) -> None:
    record.processed_at = _now()
    await session.commit()


async def list_unprocessed_events(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    limit: int = 100,
) -> Sequence[XeroWebhookEvents]:
    result = await session.execute(
        select(XeroWebhookEvents)
        .where(
            XeroWebhookEvents.tenant_id == tenant_id,
            XeroWebhookEvents.processed_at.is_(None),
        )
        .order_by(XeroWebhookEvents.created_at, XeroWebhookEvents.id)
        .limit(limit)
    )
    return result.scalars().all()
