from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.logging import set_request_context
from app.core.security import mask_secret, verify_webhook_signature
from app.db import repo
from app.db.models import InvoiceStatus, XeroWebhookEvents
from app.db.session import SessionFactory
from app.services.xero_client import XeroApiClient
from app.utils.formatting import amount_to_cents, parse_xero_date


INVOICE_STATUS_MAP = {
    "DRAFT": InvoiceStatus.DRAFT,
    "SUBMITTED": InvoiceStatus.SENT,
    "AUTHORISED": InvoiceStatus.SENT,
    "PAID": InvoiceStatus.PAID,
    "VOIDED": InvoiceStatus.VOID,
}

EVENT_CATEGORIES = ("INVOICE", "PAYMENT", "CONTACT")


@dataclass
class WebhookResponse:
    status_code: int
    body: dict[str, Any]


@dataclass
class ReplayResult:
    total: int = 0
    processed: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class WebhookEvent:
    resource_id: str
    event_type: str
    event_category: str
    event_date_utc: str

    @classmethod
    def from_payload(cls, raw: Any) -> Optional["WebhookEvent"]:
        if not isinstance(raw, dict):
            return None
        values = [raw.get(key) for key in ("resourceId", "eventType", "eventDateUtc")]
        if not all(isinstance(value, str) and value for value in values):
            return None
        category = raw.get("eventCategory")
        return cls(
            resource_id=values[0],
            event_type=values[1],
            event_category=category if isinstance(category, str) else "",
            event_date_utc=values[2],
        )


def is_handled_event(category: str, event_type: str) -> bool:
    if category not in EVENT_CATEGORIES:
        return False
    return event_type in ("CREATE", "UPDATE", f"{category}.CREATED", f"{category}.UPDATED")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return amount_to_cents(value)


class XeroWebhookReceiver:
    """Authenticate Xero webhook deliveries and reconcile local records.

    Every event runs in its own session. An event is recorded before it is
    handled and marked processed only when its handler succeeds, so failed
    events stay available to ``replay_unprocessed``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.logger = logging.getLogger("app.services.xero.webhook")

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        tenant_header: Optional[str],
    ) -> WebhookResponse:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            self.logger.warning("xero_webhook_invalid_json")
            return WebhookResponse(400, {"error": "Invalid JSON payload"})
        if not isinstance(payload, dict):
            return WebhookResponse(400, {"error": "Invalid JSON payload"})

        events = payload.get("events") or []
        if not isinstance(events, list):
            return WebhookResponse(400, {"error": "Invalid events payload"})

        if payload.get("entropy") and not events:
            return await self._intent_to_receive(raw_body, signature)

        xero_tenant_id = tenant_header
        if not xero_tenant_id and events and isinstance(events[0], dict):
            xero_tenant_id = events[0].get("tenantId")
        if not xero_tenant_id:
            self.logger.warning("xero_webhook_missing_tenant")
            return WebhookResponse(
                400,
                {"error": "Missing xero-tenant-id header and not found in event payload"},
            )

        try:
            async with self.session_factory() as session:
                tenant = await repo.get_tenant_by_xero_tenant_id(session, xero_tenant_id)
        except SQLAlchemyError:
            # Xero disables subscriptions that keep receiving errors
            self.logger.exception(
                "xero_webhook_tenant_lookup_failed",
                extra={"xero_tenant_id": xero_tenant_id},
            )
            return WebhookResponse(200, {"ok": True, "error": "Webhook could not be processed"})

        if tenant is None:
            self.logger.warning(
                "xero_webhook_unknown_tenant",
                extra={"xero_tenant_id": xero_tenant_id},
            )
            return WebhookResponse(404, {"error": "Tenant not found for this Xero organisation"})
        tenant_id = tenant.id
        webhook_key = tenant.xero_webhook_key

        if not verify_webhook_signature(raw_body, signature, webhook_key):
            self.logger.warning(
                "xero_webhook_invalid_signature",
                extra={
                    "tenant_id": str(tenant_id),
                    "signature": mask_secret(signature),
                    "webhook_key_configured": bool(webhook_key),
                },
            )
            return WebhookResponse(401, {"error": "Invalid webhook signature"})

        set_request_context(tenant_id=str(tenant_id), xero_tenant_id=xero_tenant_id)
        self.logger.info(
            "xero_webhook_received",
            extra={"tenant_id": str(tenant_id), "events": len(events)},
        )

        semaphore = asyncio.Semaphore(max(self.settings.webhook_max_concurrency, 1))

        async def bounded(raw_event: Any) -> None:
            async with semaphore:
                await self._process_event(tenant_id, raw_event)

        results = await asyncio.gather(
            *(bounded(raw_event) for raw_event in events),
            return_exceptions=True,
        )
        for outcome in results:
            if isinstance(outcome, BaseException):
                # Xero retries non-2xx deliveries; the event stays unprocessed instead
                self.logger.error(
                    "xero_webhook_event_crashed",
                    extra={"tenant_id": str(tenant_id)},
                    exc_info=outcome,
                )
        return WebhookResponse(200, {"ok": True})

    async def replay_unprocessed(self, tenant_id: uuid.UUID, limit: int = 100) -> ReplayResult:
        """Re-run recorded events that never reached ``processed_at``."""
        result = ReplayResult()
        async with self.session_factory() as session:
            records = await repo.list_unprocessed_events(session, tenant_id=tenant_id, limit=limit)
            pending = [
                (record.id, WebhookEvent(
                    resource_id=record.resource_id,
                    event_type=record.event_type,
                    event_category=record.event_category,
                    event_date_utc=record.event_date_utc,
                ))
                for record in records
            ]
            result.total = len(pending)
            for record_id, event in pending:
                try:
                    await self._dispatch(session, tenant_id, event)
                except Exception as exc:
                    await session.rollback()
                    self.logger.exception(
                        "xero_webhook_replay_failed",
                        extra=self._event_extra(tenant_id, event),
                    )
                    result.failed += 1
                    result.errors.append({"resource_id": event.resource_id, "error": str(exc)})
                    continue
                record = await session.get(XeroWebhookEvents, record_id)
                if record is not None:
                    await repo.mark_event_processed(session, record)
                result.processed += 1

        self.logger.info(
            "xero_webhook_replay_finished",
            extra={
                "tenant_id": str(tenant_id),
                "total": result.total,
                "processed": result.processed,
                "failed": result.failed,
            },
        )
        return result

    async def _intent_to_receive(self, raw_body: bytes, signature: Optional[str]) -> WebhookResponse:
        if not signature:
            self.logger.warning("xero_webhook_intent_missing_signature")
            return WebhookResponse(401, {"error": "Missing x-xero-signature header"})

        async with self.session_factory() as session:
            tenants = await repo.list_tenants_with_webhook_key(session)
        for tenant in tenants:
            if verify_webhook_signature(raw_body, signature, tenant.xero_webhook_key):
                self.logger.info(
                    "xero_webhook_intent_verified",
                    extra={"tenant_id": str(tenant.id)},
                )
                return WebhookResponse(200, {"ok": True})

        self.logger.warning("xero_webhook_intent_rejected", extra={"candidates": len(tenants)})
        return WebhookResponse(401, {"error": "Invalid webhook signature"})

    async def _process_event(self, tenant_id: uuid.UUID, raw_event: Any) -> None:
        event = WebhookEvent.from_payload(raw_event)
        if event is None:
            self.logger.warning("xero_webhook_event_malformed", extra={"tenant_id": str(tenant_id)})
            return

        async with self.session_factory() as session:
            record, created = await repo.register_webhook_event(
                session,
                tenant_id=tenant_id,
                resource_id=event.resource_id,
                event_type=event.event_type,
                event_category=event.event_category,
                event_date_utc=event.event_date_utc,
                payload=raw_event,
            )
            if not created:
                self.logger.info(
                    "xero_webhook_event_duplicate",
                    extra=self._event_extra(tenant_id, event),
                )
                return

            try:
                await self._dispatch(session, tenant_id, event)
            except Exception:
                await session.rollback()
                self.logger.exception(
                    "xero_webhook_event_failed",
                    extra=self._event_extra(tenant_id, event),
                )
                return

            await repo.mark_event_processed(session, record)
            self.logger.info(
                "xero_webhook_event_processed",
                extra=self._event_extra(tenant_id, event),
            )

    async def _dispatch(self, session: AsyncSession, tenant_id: uuid.UUID, event: WebhookEvent) -> None:
        if not is_handled_event(event.event_category, event.event_type):
            self.logger.info(
                "xero_webhook_event_unhandled",
                extra=self._event_extra(tenant_id, event),
            )
            return

        client = XeroApiClient(session, tenant_id, self.settings, self.http_client)
        if event.event_category == "INVOICE":
            await self._handle_invoice(session, client, tenant_id, event.resource_id)
        elif event.event_category == "PAYMENT":
            await self._handle_payment(session, client, tenant_id, event.resource_id)
        else:
            await self._handle_contact(session, client, tenant_id, event.resource_id)

    async def _handle_invoice(
        self,
        session: AsyncSession,
        client: XeroApiClient,
        tenant_id: uuid.UUID,
        xero_invoice_id: str,
    ) -> None:
        invoices = await repo.find_invoices_by_xero_id(
            session, tenant_id=tenant_id, xero_invoice_id=xero_invoice_id
        )
        if not invoices:
            self.logger.info(
                "xero_webhook_invoice_not_local",
                extra={"tenant_id": str(tenant_id), "xero_invoice_id": xero_invoice_id},
            )
            return

        remote = await client.fetch_one("Invoices", xero_invoice_id)
        amount_paid = _cents(remote.get("AmountPaid")) or 0
        amount_due = _cents(remote.get("AmountDue"))
        mapped_status = INVOICE_STATUS_MAP.get(remote.get("Status") or "")

        for invoice in invoices:
            invoice.amount_paid_cents = amount_paid
            if amount_due is not None:
                invoice.amount_due_cents = amount_due
            if mapped_status is not None:
                invoice.status = mapped_status
            invoice.xero_synced_at = _now()
        self.logger.info(
            "xero_webhook_invoice_updated",
            extra={
                "tenant_id": str(tenant_id),
                "xero_invoice_id": xero_invoice_id,
                "status": mapped_status,
                "amount_paid_cents": amount_paid,
            },
        )

    async def _handle_payment(
        self,
        session: AsyncSession,
        client: XeroApiClient,
        tenant_id: uuid.UUID,
        xero_payment_id: str,
    ) -> None:
        remote = await client.fetch_one("Payments", xero_payment_id)
        remote_invoice = remote.get("Invoice") or {}
        xero_invoice_id = remote_invoice.get("InvoiceID") if isinstance(remote_invoice, dict) else None
        if not xero_invoice_id:
            self.logger.warning(
                "xero_webhook_payment_without_invoice",
                extra={"tenant_id": str(tenant_id), "xero_payment_id": xero_payment_id},
            )
            return

        invoices = await repo.find_invoices_by_xero_id(
            session, tenant_id=tenant_id, xero_invoice_id=xero_invoice_id
        )
        if not invoices:
            self.logger.info(
                "xero_webhook_payment_invoice_not_local",
                extra={
                    "tenant_id": str(tenant_id),
                    "xero_payment_id": xero_payment_id,
                    "xero_invoice_id": xero_invoice_id,
                },
            )
            return

        amount_cents = _cents(remote.get("Amount")) or 0
        payment_date = parse_xero_date(remote.get("Date")) or date.today()

        reference = remote.get("Reference")
        payment, created = await repo.upsert_synced_payment(
            session,
            tenant_id=tenant_id,
            invoice_id=invoices[0].id,
            xero_payment_id=xero_payment_id,
            payment_date=payment_date,
            amount_cents=amount_cents,
            notes=f"Xero Payment: {reference}" if reference else None,
        )
        self.logger.info(
            "xero_webhook_payment_reconciled",
            extra={
                "tenant_id": str(tenant_id),
                "xero_payment_id": xero_payment_id,
                "payment_id": str(payment.id),
                "payment_created": created,
            },
        )

    async def _handle_contact(
        self,
        session: AsyncSession,
        client: XeroApiClient,
        tenant_id: uuid.UUID,
        xero_contact_id: str,
    ) -> None:
        students = await repo.find_students_by_xero_contact_id(
            session, tenant_id=tenant_id, xero_contact_id=xero_contact_id
        )
        if not students:
            self.logger.info(
                "xero_webhook_contact_not_local",
                extra={"tenant_id": str(tenant_id), "xero_contact_id": xero_contact_id},
            )
            return

        remote = await client.fetch_one("Contacts", xero_contact_id)
        email = remote.get("EmailAddress")
        phone = _primary_phone(remote.get("Phones"))
        if not email and not phone:
            return

        # Names are owned locally; only reachability details flow back.
        for student in students:
            if email:
                student.email = email
            if phone:
                student.mobile_phone = phone
        self.logger.info(
            "xero_webhook_contact_updated",
            extra={"tenant_id": str(tenant_id), "xero_contact_id": xero_contact_id},
        )

    @staticmethod
    def _event_extra(tenant_id: uuid.UUID, event: WebhookEvent) -> dict[str, Any]:
        return {
            "tenant_id": str(tenant_id),
            "resource_id": event.resource_id,
            "event_type": event.event_type,
            "event_category": event.event_category,
            "event_date_utc": event.event_date_utc,
        }


def _primary_phone(phones: Any) -> Optional[str]:
    if not isinstance(phones, list):
        return None
    for phone_type in ("MOBILE", "DEFAULT"):
        for phone in phones:
            if isinstance(phone, dict) and phone.get("PhoneType") == phone_type:
                return phone.get("PhoneNumber") or None
    return None
