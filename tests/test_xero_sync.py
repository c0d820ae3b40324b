from __future__ import annotations

import json
import uuid

import httpx
import pytest

from app.db.models import InvoiceStatus, SyncStatus
from app.services.xero_sync import (
    PAYMENT_REQUIRES_SYNCED_INVOICE,
    SyncRecordNotFoundError,
    XeroSyncService,
)


CONTACTS = "/api.xro/2.0/Contacts"
INVOICES = "/api.xro/2.0/Invoices"
PAYMENTS = "/api.xro/2.0/Payments"


@pytest.fixture
def service(session, settings, http_client):
    return XeroSyncService(session, settings, http_client)


def _created(collection: str, id_key: str, external_id: str) -> httpx.Response:
    return httpx.Response(200, json={collection: [{id_key: external_id}]})


async def test_sync_contact_creates_contact(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    fake_xero.add("POST", CONTACTS, _created("Contacts", "ContactID", "c-1"))

    result = await service.sync_contact(student.id)

    assert result.success
    assert result.external_id == "c-1"
    assert not result.skipped
    assert student.xero_contact_id == "c-1"
    assert student.xero_sync_status == SyncStatus.SYNCED
    assert student.xero_sync_error is None

    contact = fake_xero.json_body(fake_xero.calls("POST", CONTACTS)[0])["Contacts"][0]
    assert contact["Name"] == "Ada Lovelace"
    assert contact["ContactNumber"] == str(student.id)
    assert contact["EmailAddress"] == "ada@example.com"
    assert contact["Addresses"] == [
        {
            "AddressType": "STREET",
            "AddressLine1": "1 Analytical Way",
            "City": "Melbourne",
            "Region": "VIC",
            "PostalCode": "3000",
            "Country": "Australia",
        }
    ]
    assert contact["Phones"] == [{"PhoneType": "MOBILE", "PhoneNumber": "0400 000 000"}]


async def test_synced_contact_is_reused(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-existing")

    result = await service.sync_contact(student.id)

    assert result.success
    assert result.skipped
    assert result.external_id == "c-existing"
    assert fake_xero.requests == []


async def test_missing_record_raises(service):
    with pytest.raises(SyncRecordNotFoundError, match="Invoice not found"):
        await service.sync_invoice(uuid.uuid4())


async def test_invoice_sync_creates_contact_first(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    fake_xero.add("POST", CONTACTS, _created("Contacts", "ContactID", "c-1"))
    fake_xero.add("POST", INVOICES, _created("Invoices", "InvoiceID", "i-1"))

    result = await service.sync_invoice(invoice.id)

    assert result.success
    assert result.external_id == "i-1"
    assert [request.url.path for request in fake_xero.requests] == [CONTACTS, INVOICES]
    assert student.xero_contact_id == "c-1"
    assert invoice.xero_invoice_id == "i-1"
    assert invoice.xero_sync_status == SyncStatus.SYNCED

    body = fake_xero.json_body(fake_xero.calls("POST", INVOICES)[0])["Invoices"][0]
    assert body["Type"] == "ACCREC"
    assert body["Contact"] == {"ContactID": "c-1"}
    assert body["Date"] == "2025-03-01"
    assert body["DueDate"] == "2025-03-15"
    assert body["Reference"] == "SMS Invoice #INV-0001"
    assert body["Status"] == "AUTHORISED"
    assert body["CurrencyCode"] == "AUD"
    assert body["InvoiceNumber"] == "INV-0001"
    assert body["LineItems"] == [
        {
            "Description": "Diploma of Nursing - Installment",
            "Quantity": 1.0,
            "UnitAmount": 250.0,
            "AccountCode": "210",
        }
    ]


async def test_invoice_lines_resolve_codes(seed, service, fake_xero, settings):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    invoice = await seed.invoice(
        tenant,
        student,
        account_code=None,
        lines=(
            {"description": "Tuition", "amount_cents": 150075, "xero_account_code": "220"},
            {"name": "Materials", "amount_cents": 2550, "xero_item_code": "MAT"},
        ),
    )
    fake_xero.add("POST", INVOICES, _created("Invoices", "InvoiceID", "i-1"))

    await service.sync_invoice(invoice.id)

    lines = fake_xero.json_body(fake_xero.calls("POST", INVOICES)[0])["Invoices"][0]["LineItems"]
    assert lines == [
        {"Description": "Tuition", "Quantity": 1.0, "UnitAmount": 1500.75, "AccountCode": "220"},
        {
            "Description": "Materials",
            "Quantity": 1.0,
            "UnitAmount": 25.5,
            "AccountCode": settings.xero_default_account_code,
            "ItemCode": "MAT",
        },
    ]


async def test_invoice_rejection_is_recorded(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    invoice = await seed.invoice(tenant, student)
    fake_xero.add(
        "POST",
        INVOICES,
        httpx.Response(
            400,
            json={
                "ApiExceptions": [
                    {
                        "Message": "A validation exception occurred",
                        "ValidationErrors": [{"Message": "Account code '210' is not a valid code"}],
                    }
                ]
            },
        ),
    )

    result = await service.sync_invoice(invoice.id)

    expected = "A validation exception occurred: Account code '210' is not a valid code"
    assert not result.success
    assert result.error == expected
    assert invoice.xero_sync_status == SyncStatus.FAILED
    assert invoice.xero_sync_error == expected
    assert invoice.xero_invoice_id is None


async def test_success_without_id_is_a_failure(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    invoice = await seed.invoice(tenant, student)
    fake_xero.add("POST", INVOICES, httpx.Response(200, json={"Invoices": [{}]}))

    result = await service.sync_invoice(invoice.id)

    assert not result.success
    assert result.error == "Xero returned invoice but no InvoiceID"
    assert invoice.xero_sync_status == SyncStatus.FAILED


async def test_contact_failure_blocks_invoice(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    fake_xero.add("POST", CONTACTS, httpx.Response(500, text="down"))

    result = await service.sync_invoice(invoice.id)

    assert result.error == "Failed to sync student contact: Xero API error (500): down"
    assert student.xero_sync_status == SyncStatus.FAILED
    assert invoice.xero_sync_status == SyncStatus.FAILED
    assert fake_xero.calls("POST", INVOICES) == []


async def test_synced_invoice_is_reused(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-existing")

    result = await service.sync_invoice(invoice.id)

    assert result.skipped
    assert result.external_id == "i-existing"
    assert fake_xero.requests == []


async def test_payment_requires_synced_invoice(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    payment = await seed.payment(tenant, invoice)

    result = await service.sync_payment(payment.id)

    assert not result.success
    assert result.error == PAYMENT_REQUIRES_SYNCED_INVOICE
    assert payment.xero_sync_status == SyncStatus.FAILED
    assert fake_xero.requests == []


async def test_payment_is_put_with_tenant_account_code(seed, service, fake_xero):
    tenant = await seed.tenant(payment_account_code="090")
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    payment = await seed.payment(tenant, invoice)
    fake_xero.add("PUT", PAYMENTS, _created("Payments", "PaymentID", "p-1"))

    result = await service.sync_payment(payment.id)

    assert result.success
    assert payment.xero_payment_id == "p-1"
    body = fake_xero.json_body(fake_xero.calls("PUT", PAYMENTS)[0])["Payments"][0]
    assert body == {
        "Invoice": {"InvoiceID": "i-1"},
        "Account": {"Code": "090"},
        "Date": "2025-03-10",
        "Amount": 100.0,
        "Reference": f"SMS Payment #{payment.id}",
    }


async def test_payment_falls_back_to_configured_account_code(seed, service, fake_xero, settings):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    payment = await seed.payment(tenant, invoice)
    fake_xero.add("PUT", PAYMENTS, _created("Payments", "PaymentID", "p-1"))

    await service.sync_payment(payment.id)

    body = fake_xero.json_body(fake_xero.calls("PUT", PAYMENTS)[0])["Payments"][0]
    assert body["Account"] == {"Code": settings.xero_default_payment_account_code}


async def test_batch_continues_after_failures(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    good = await seed.invoice(tenant, student, invoice_number="INV-0001")
    bad = await seed.invoice(tenant, student, invoice_number="INV-0002")
    await seed.invoice(tenant, student, invoice_number="INV-0003", status=InvoiceStatus.DRAFT)
    synced = await seed.invoice(tenant, student, invoice_number="INV-0004")
    await seed.mark_synced(synced, "i-4")

    def respond(request: httpx.Request) -> httpx.Response:
        number = json.loads(request.content)["Invoices"][0]["InvoiceNumber"]
        if number == "INV-0001":
            return _created("Invoices", "InvoiceID", "i-1")
        return httpx.Response(400, json={"ApiExceptions": [{"Message": "Duplicate invoice number"}]})

    fake_xero.add("POST", INVOICES, respond)

    result = await service.sync_pending_invoices(tenant_id=tenant.id)

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert result.errors == [{"invoice_id": str(bad.id), "error": "Duplicate invoice number"}]
    assert good.xero_sync_status == SyncStatus.SYNCED
    assert bad.xero_sync_status == SyncStatus.FAILED


async def test_batch_records_unconnected_tenant(seed, service, fake_xero):
    tenant = await seed.tenant(connected=False)
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    invoice = await seed.invoice(tenant, student)

    result = await service.sync_pending_invoices(tenant_id=tenant.id, limit=10)

    assert result.processed == 1
    assert result.failed == 1
    assert result.errors[0]["error"] == "Xero not connected for this tenant"
    assert invoice.xero_sync_error == "Xero not connected for this tenant"
    assert fake_xero.requests == []


async def test_second_invoice_sync_reuses_external_id(seed, service, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    invoice = await seed.invoice(tenant, student)
    fake_xero.add("POST", INVOICES, _created("Invoices", "InvoiceID", "i-1"))

    first = await service.sync_invoice(invoice.id)
    second = await service.sync_invoice(invoice.id)

    assert first.external_id == second.external_id == "i-1"
    assert second.skipped
    assert len(fake_xero.calls("POST", INVOICES)) == 1
