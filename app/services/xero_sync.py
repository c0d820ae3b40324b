from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.logging import log_sync_finished, log_sync_started, set_request_context
from app.db import repo
from app.db.models import Invoices, Payments, Students, SyncStatus
from app.services.xero_client import XeroApiClient, XeroError
from app.utils.formatting import (
    SYNC_ERROR_MAX,
    XERO_DESCRIPTION_MAX,
    XERO_REFERENCE_MAX,
    cents_to_amount,
    format_xero_date,
    truncate,
)


PAYMENT_REQUIRES_SYNCED_INVOICE = "Invoice must be synced to Xero before payment can be synced"
BATCH_ERROR_SAMPLE = 10


class SyncRecordNotFoundError(LookupError):
    def __init__(self, resource: str, record_id: uuid.UUID):
        self.resource = resource
        self.record_id = record_id
        super().__init__(f"{resource} not found")


@dataclass
class SyncResult:
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class BatchSyncResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class _Target:
    resource_type: str
    path: str
    method: str
    collection: str
    id_key: str


_CONTACT = _Target("contact", "/Contacts", "POST", "Contacts", "ContactID")
_INVOICE = _Target("invoice", "/Invoices", "POST", "Invoices", "InvoiceID")
_PAYMENT = _Target("payment", "/Payments", "PUT", "Payments", "PaymentID")


def _amount(cents: Optional[int]) -> float:
    # Decimal keeps two exact places; float only for the JSON body
    return float(cents_to_amount(cents or 0))


def build_contact_payload(student: Students) -> dict[str, Any]:
    contact: dict[str, Any] = {
        "Name": f"{student.first_name or ''} {student.last_name or ''}".strip(),
        "FirstName": student.first_name or "",
        "LastName": student.last_name or "",
        "ContactNumber": str(student.id),
        "ContactStatus": "ACTIVE",
    }
    if student.email:
        contact["EmailAddress"] = student.email
    if student.street_address or student.suburb or student.postcode:
        address = {
            "AddressType": "STREET",
            "AddressLine1": student.street_address or "",
            "City": student.suburb,
            "Region": student.state,
            "PostalCode": student.postcode,
            "Country": student.country or "Australia",
        }
        contact["Addresses"] = [{key: value for key, value in address.items() if value is not None}]
    phones = []
    if student.mobile_phone:
        phones.append({"PhoneType": "MOBILE", "PhoneNumber": student.mobile_phone})
    if student.work_phone:
        phones.append({"PhoneType": "DEFAULT", "PhoneNumber": student.work_phone})
    contact["Phones"] = phones
    return {"Contacts": [contact]}


def build_invoice_payload(context: repo.InvoiceContext, settings: Settings) -> dict[str, Any]:
    invoice = context.invoice
    template = context.template
    program_name = context.program.name if context.program and context.program.name else "Course"
    template_account = template.xero_account_code if template else None
    template_item = template.xero_item_code if template else None

    line_items: list[dict[str, Any]] = []
    for line in context.lines:
        item: dict[str, Any] = {
            "Description": truncate(
                line.description or line.name or program_name or "Course fee",
                XERO_DESCRIPTION_MAX,
            ),
            "Quantity": 1.0,
            "UnitAmount": _amount(line.amount_cents),
            "AccountCode": line.xero_account_code
            or template_account
            or settings.xero_default_account_code,
        }
        item_code = line.xero_item_code or template_item
        if item_code:
            item["ItemCode"] = item_code
        line_items.append(item)

    if not line_items:
        fallback: dict[str, Any] = {
            "Description": truncate(f"{program_name} - Installment", XERO_DESCRIPTION_MAX),
            "Quantity": 1.0,
            "UnitAmount": _amount(invoice.amount_due_cents),
            "AccountCode": template_account or settings.xero_default_account_code,
        }
        if template_item:
            fallback["ItemCode"] = template_item
        line_items.append(fallback)

    return {
        "Invoices": [
            {
                "Type": "ACCREC",
                "Contact": {"ContactID": context.student.xero_contact_id},
                "Date": format_xero_date(invoice.issue_date),
                "DueDate": format_xero_date(invoice.due_date),
                "Reference": truncate(f"SMS Invoice #{invoice.invoice_number}", XERO_REFERENCE_MAX),
                "Status": "AUTHORISED",
                "CurrencyCode": settings.xero_currency_code,
                "InvoiceNumber": invoice.invoice_number,
                "LineItems": line_items,
            }
        ]
    }


def build_payment_payload(payment: Payments, invoice: Invoices, account_code: str) -> dict[str, Any]:
    return {
        "Payments": [
            {
                "Invoice": {"InvoiceID": invoice.xero_invoice_id},
                "Account": {"Code": account_code},
                "Date": format_xero_date(payment.payment_date),
                "Amount": _amount(payment.amount_cents),
                "Reference": truncate(f"SMS Payment #{payment.id}", XERO_REFERENCE_MAX),
            }
        ]
    }


class XeroSyncService:
    """Push local students, invoices and payments to Xero.

    Each operation is idempotent through the stored Xero id and never raises
    for remote failures: the record is marked ``failed`` with a readable error
    and a failed ``SyncResult`` is returned so batch callers can continue.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.logger = logging.getLogger("app.services.xero.sync")

    def _client(self, tenant_id: uuid.UUID) -> XeroApiClient:
        return XeroApiClient(self.session, tenant_id, self.settings, self.http_client)

    async def sync_contact(self, student_id: uuid.UUID) -> SyncResult:
        student = await repo.get_student_optional(self.session, student_id)
        if student is None:
            raise SyncRecordNotFoundError("Student", student_id)
        set_request_context(tenant_id=str(student.tenant_id))

        if student.xero_contact_id:
            return self._reuse(_CONTACT, student.tenant_id, student.id, student.xero_contact_id)

        return await self._push(_CONTACT, student, student.tenant_id, build_contact_payload(student))

    async def sync_invoice(self, invoice_id: uuid.UUID) -> SyncResult:
        invoice = await repo.get_invoice_optional(self.session, invoice_id)
        if invoice is None:
            raise SyncRecordNotFoundError("Invoice", invoice_id)
        set_request_context(tenant_id=str(invoice.tenant_id))

        if invoice.xero_invoice_id and invoice.xero_sync_status == SyncStatus.SYNCED:
            return self._reuse(_INVOICE, invoice.tenant_id, invoice.id, invoice.xero_invoice_id)

        context = await repo.load_invoice_context(self.session, invoice)
        if context is None:
            return await self._fail(_INVOICE, invoice, invoice.tenant_id, "Enrollment not found for invoice")

        if not context.student.xero_contact_id:
            contact_result = await self.sync_contact(context.student.id)
            if not contact_result.success:
                return await self._fail(
                    _INVOICE,
                    invoice,
                    invoice.tenant_id,
                    f"Failed to sync student contact: {contact_result.error}",
                )

        payload = build_invoice_payload(context, self.settings)
        return await self._push(_INVOICE, invoice, invoice.tenant_id, payload)

    async def sync_payment(self, payment_id: uuid.UUID) -> SyncResult:
        payment = await repo.get_payment_optional(self.session, payment_id)
        if payment is None:
            raise SyncRecordNotFoundError("Payment", payment_id)
        set_request_context(tenant_id=str(payment.tenant_id))

        if payment.xero_payment_id and payment.xero_sync_status == SyncStatus.SYNCED:
            return self._reuse(_PAYMENT, payment.tenant_id, payment.id, payment.xero_payment_id)

        invoice = await repo.get_invoice_optional(self.session, payment.invoice_id)
        if invoice is None:
            return await self._fail(_PAYMENT, payment, payment.tenant_id, "Invoice not found")
        if not invoice.xero_invoice_id or invoice.xero_sync_status != SyncStatus.SYNCED:
            return await self._fail(_PAYMENT, payment, payment.tenant_id, PAYMENT_REQUIRES_SYNCED_INVOICE)

        tenant = await repo.get_tenant_optional(self.session, payment.tenant_id)
        account_code = (
            tenant.xero_default_payment_account_code if tenant is not None else None
        ) or self.settings.xero_default_payment_account_code

        payload = build_payment_payload(payment, invoice, account_code)
        return await self._push(_PAYMENT, payment, payment.tenant_id, payload)

    async def sync_pending_invoices(
        self,
        tenant_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = None,
    ) -> BatchSyncResult:
        invoices = await repo.list_pending_invoices(
            self.session,
            tenant_id=tenant_id,
            limit=limit or self.settings.sync_batch_limit,
        )
        invoice_ids = [invoice.id for invoice in invoices]
        result = BatchSyncResult()
        size = max(self.settings.sync_batch_size, 1)

        self.logger.info(
            "xero_batch_sync_started",
            extra={"tenant_id": str(tenant_id) if tenant_id else None, "pending": len(invoice_ids)},
        )
        for offset in range(0, len(invoice_ids), size):
            for invoice_id in invoice_ids[offset:offset + size]:
                result.processed += 1
                try:
                    outcome = await self.sync_invoice(invoice_id)
                except Exception as exc:
                    await self.session.rollback()
                    self.logger.exception(
                        "xero_batch_sync_invoice_crashed",
                        extra={"invoice_id": str(invoice_id)},
                    )
                    outcome = SyncResult(success=False, error=str(exc) or exc.__class__.__name__)

                if outcome.success:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    if len(result.errors) < BATCH_ERROR_SAMPLE:
                        result.errors.append(
                            {"invoice_id": str(invoice_id), "error": outcome.error or "Unknown error"}
                        )
            if offset + size < len(invoice_ids) and self.settings.sync_batch_delay_seconds > 0:
                await asyncio.sleep(self.settings.sync_batch_delay_seconds)

        self.logger.info(
            "xero_batch_sync_finished",
            extra={
                "tenant_id": str(tenant_id) if tenant_id else None,
                "processed": result.processed,
                "succeeded": result.succeeded,
                "failed": result.failed,
            },
        )
        return result

    def _reuse(
        self,
        target: _Target,
        tenant_id: uuid.UUID,
        local_id: uuid.UUID,
        external_id: str,
    ) -> SyncResult:
        log_sync_finished(
            tenant_id=str(tenant_id),
            resource_type=target.resource_type,
            local_id=str(local_id),
            external_id=external_id,
            result="skipped",
            idempotent_reuse=True,
        )
        return SyncResult(success=True, external_id=external_id, skipped=True)

    async def _push(
        self,
        target: _Target,
        record: repo.SyncedRecord,
        tenant_id: uuid.UUID,
        payload: dict[str, Any],
    ) -> SyncResult:
        log_sync_started(
            tenant_id=str(tenant_id),
            resource_type=target.resource_type,
            local_id=str(record.id),
            payload=payload,
        )
        client = self._client(tenant_id)
        start = perf_counter()
        try:
            response = await client.request(target.method, target.path, payload)
        except (XeroError, httpx.HTTPError) as exc:
            return await self._fail(
                target,
                record,
                tenant_id,
                str(exc) or exc.__class__.__name__,
                latency_ms=(perf_counter() - start) * 1000,
            )
        latency_ms = (perf_counter() - start) * 1000

        if not response.is_success:
            return await self._fail(
                target,
                record,
                tenant_id,
                client.parse_error(response, response.text),
                status_code=response.status_code,
                latency_ms=latency_ms,
            )

        external_id = _extract_id(response, target)
        if not external_id:
            return await self._fail(
                target,
                record,
                tenant_id,
                f"Xero returned {target.resource_type} but no {target.id_key}",
                status_code=response.status_code,
                latency_ms=latency_ms,
            )

        await repo.mark_sync_success(self.session, record, external_id=external_id)
        log_sync_finished(
            tenant_id=str(tenant_id),
            resource_type=target.resource_type,
            local_id=str(record.id),
            external_id=external_id,
            result="success",
            xero_status_code=response.status_code,
            latency_ms=latency_ms,
        )
        return SyncResult(success=True, external_id=external_id)

    async def _fail(
        self,
        target: _Target,
        record: repo.SyncedRecord,
        tenant_id: uuid.UUID,
        message: str,
        *,
        status_code: Optional[int] = None,
        latency_ms: Optional[float] = None,
    ) -> SyncResult:
        await repo.mark_sync_failure(
            self.session,
            record,
            error=truncate(message, SYNC_ERROR_MAX) or "",
        )
        log_sync_finished(
            tenant_id=str(tenant_id),
            resource_type=target.resource_type,
            local_id=str(record.id),
            external_id=None,
            result="failed",
            xero_status_code=status_code,
            latency_ms=latency_ms,
            error_message=message,
        )
        return SyncResult(success=False, error=message)


def _extract_id(response: httpx.Response, target: _Target) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    items = data.get(target.collection)
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return None
    value = items[0].get(target.id_key)
    return str(value) if value else None
