from __future__ import annotations

import json
from datetime import date

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from app.core.security import compute_webhook_signature
from app.db import repo
from app.db.models import InvoiceStatus, Payments, SyncStatus, XeroWebhookEvents
from app.db.session import build_session_factory
from app.services.xero_webhook import WebhookEvent, XeroWebhookReceiver, is_handled_event


XERO_TENANT_ID = "xero-org-1"
WEBHOOK_KEY = "webhook-signing-key"
API = "/api.xro/2.0"


@pytest.fixture
def receiver(session_factory, settings, http_client):
    return XeroWebhookReceiver(
        session_factory,
        settings.model_copy(update={"webhook_max_concurrency": 1}),
        http_client,
    )


def _event(resource_id: str, category: str = "INVOICE", event_type: str = "UPDATE", **overrides):
    event = {
        "resourceUrl": f"https://api.xero.com/api.xro/2.0/{category.title()}s/{resource_id}",
        "resourceId": resource_id,
        "eventDateUtc": "2025-03-16T01:02:03.000",
        "eventType": event_type,
        "eventCategory": category,
        "tenantId": XERO_TENANT_ID,
        "tenantType": "ORGANISATION",
    }
    event.update(overrides)
    return event


def _body(*events, entropy: str = "QWERTYUIOP") -> bytes:
    return json.dumps(
        {
            "events": list(events),
            "firstEventSequence": 1,
            "lastEventSequence": len(events),
            "entropy": entropy,
        }
    ).encode("utf-8")


async def _deliver(receiver, *events, key: str = WEBHOOK_KEY, tenant_header=XERO_TENANT_ID):
    body = _body(*events)
    return await receiver.handle(body, compute_webhook_signature(body, key), tenant_header)


async def _events(session):
    result = await session.execute(
        select(XeroWebhookEvents).execution_options(populate_existing=True)
    )
    return result.scalars().all()


def test_event_parsing():
    assert WebhookEvent.from_payload(_event("i-1")) == WebhookEvent(
        resource_id="i-1",
        event_type="UPDATE",
        event_category="INVOICE",
        event_date_utc="2025-03-16T01:02:03.000",
    )
    assert WebhookEvent.from_payload({"resourceId": "i-1"}) is None
    assert WebhookEvent.from_payload("nope") is None


@pytest.mark.parametrize(
    ("category", "event_type", "expected"),
    [
        ("INVOICE", "UPDATE", True),
        ("PAYMENT", "CREATE", True),
        ("CONTACT", "CONTACT.UPDATED", True),
        ("INVOICE", "DELETE", False),
        ("CREDITNOTE", "UPDATE", False),
    ],
)
def test_handled_events(category, event_type, expected):
    assert is_handled_event(category, event_type) is expected


async def test_intent_to_receive(seed, receiver):
    await seed.tenant()
    body = json.dumps(
        {"events": [], "firstEventSequence": 0, "lastEventSequence": 0, "entropy": "ABCDEF"}
    ).encode("utf-8")

    accepted = await receiver.handle(body, compute_webhook_signature(body, WEBHOOK_KEY), None)
    rejected = await receiver.handle(body, compute_webhook_signature(body, "wrong-key"), None)
    unsigned = await receiver.handle(body, None, None)

    assert (accepted.status_code, accepted.body) == (200, {"ok": True})
    assert (rejected.status_code, rejected.body) == (401, {"error": "Invalid webhook signature"})
    assert (unsigned.status_code, unsigned.body) == (401, {"error": "Missing x-xero-signature header"})


async def test_invalid_json_is_rejected(receiver):
    response = await receiver.handle(b"{not json", "sig", XERO_TENANT_ID)

    assert response.status_code == 400
    assert response.body == {"error": "Invalid JSON payload"}


async def test_tenant_is_required(receiver):
    body = _body(_event("i-1", tenantId=None))

    response = await receiver.handle(body, "sig", None)

    assert response.status_code == 400
    assert response.body == {"error": "Missing xero-tenant-id header and not found in event payload"}


async def test_unknown_tenant(seed, receiver):
    await seed.tenant()

    response = await _deliver(receiver, _event("i-1"), tenant_header="some-other-org")

    assert response.status_code == 404


async def test_tenant_falls_back_to_event_payload(seed, receiver, session):
    await seed.tenant()

    response = await _deliver(receiver, _event("i-unknown"), tenant_header=None)

    assert response.status_code == 200
    assert len(await _events(session)) == 1


async def test_bad_signature_records_nothing(seed, receiver, session, fake_xero):
    await seed.tenant()

    response = await _deliver(receiver, _event("i-1"), key="not-the-key")

    assert response.status_code == 401
    assert await _events(session) == []
    assert fake_xero.requests == []


async def test_invoice_update_is_applied(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    fake_xero.add(
        "GET",
        f"{API}/Invoices/i-1",
        httpx.Response(
            200,
            json={"Invoices": [{"InvoiceID": "i-1", "Status": "PAID", "AmountPaid": 250.0, "AmountDue": 0.0}]},
        ),
    )
    event = _event("i-1")

    response = await _deliver(receiver, event)

    assert response.status_code == 200
    await session.refresh(invoice)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.amount_paid_cents == 25000
    assert invoice.amount_due_cents == 0
    assert invoice.xero_synced_at is not None

    [record] = await _events(session)
    assert record.processed_at is not None
    assert record.event_category == "INVOICE"
    assert record.payload == event


async def test_duplicate_delivery_is_processed_once(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    fake_xero.add(
        "GET",
        f"{API}/Invoices/i-1",
        httpx.Response(200, json={"Invoices": [{"InvoiceID": "i-1", "Status": "AUTHORISED", "AmountPaid": 0}]}),
    )

    first = await _deliver(receiver, _event("i-1"))
    second = await _deliver(receiver, _event("i-1"))

    assert first.status_code == second.status_code == 200
    assert len(fake_xero.calls("GET", f"{API}/Invoices/i-1")) == 1
    assert len(await _events(session)) == 1


async def test_failed_event_stays_unprocessed_until_replayed(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    fake_xero.add(
        "GET",
        f"{API}/Invoices/i-1",
        httpx.Response(500, text="temporarily broken"),
        httpx.Response(200, json={"Invoices": [{"InvoiceID": "i-1", "Status": "PAID", "AmountPaid": 250}]}),
    )

    response = await _deliver(receiver, _event("i-1"))

    assert response.status_code == 200
    [record] = await _events(session)
    assert record.processed_at is None
    await session.refresh(invoice)
    assert invoice.status == InvoiceStatus.SENT

    replay = await receiver.replay_unprocessed(tenant.id)

    assert (replay.total, replay.processed, replay.failed) == (1, 1, 0)
    await session.refresh(invoice)
    assert invoice.status == InvoiceStatus.PAID
    [record] = await _events(session)
    assert record.processed_at is not None


async def test_replay_reports_failures(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    fake_xero.add("GET", f"{API}/Invoices/i-1", httpx.Response(500, text="still broken"))
    await _deliver(receiver, _event("i-1"))

    replay = await receiver.replay_unprocessed(tenant.id)

    assert (replay.total, replay.processed, replay.failed) == (1, 0, 1)
    assert replay.errors == [{"resource_id": "i-1", "error": "Xero API error (500): still broken"}]
    [record] = await _events(session)
    assert record.processed_at is None


async def test_payment_event_creates_local_payment(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    fake_xero.add(
        "GET",
        f"{API}/Payments/p-9",
        httpx.Response(
            200,
            json={
                "Payments": [
                    {
                        "PaymentID": "p-9",
                        "Invoice": {"InvoiceID": "i-1"},
                        "Amount": 120.5,
                        "Date": "/Date(1741996800000+0000)/",
                        "Reference": "Bank transfer",
                    }
                ]
            },
        ),
    )

    await _deliver(receiver, _event("p-9", category="PAYMENT", event_type="CREATE"))

    result = await session.execute(select(Payments).where(Payments.xero_payment_id == "p-9"))
    payment = result.scalar_one()
    assert payment.invoice_id == invoice.id
    assert payment.amount_cents == 12050
    assert payment.payment_date == date(2025, 3, 15)
    assert payment.notes == "Xero Payment: Bank transfer"
    assert payment.xero_sync_status == SyncStatus.SYNCED


async def test_payment_event_updates_existing_payment(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    payment = await seed.payment(tenant, invoice)
    await seed.mark_synced(payment, "p-9")
    fake_xero.add(
        "GET",
        f"{API}/Payments/p-9",
        httpx.Response(
            200,
            json={"Payments": [{"PaymentID": "p-9", "Invoice": {"InvoiceID": "i-1"}, "Amount": 80, "Date": "2025-03-12"}]},
        ),
    )

    await _deliver(receiver, _event("p-9", category="PAYMENT"))

    await session.refresh(payment)
    assert payment.amount_cents == 8000
    assert payment.payment_date == date(2025, 3, 12)
    result = await session.execute(select(Payments))
    assert len(result.scalars().all()) == 1


async def test_contact_event_updates_reachability_only(seed, receiver, session, fake_xero):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    await seed.mark_synced(student, "c-1")
    fake_xero.add(
        "GET",
        f"{API}/Contacts/c-1",
        httpx.Response(
            200,
            json={
                "Contacts": [
                    {
                        "ContactID": "c-1",
                        "FirstName": "Augusta",
                        "LastName": "King",
                        "EmailAddress": "augusta@example.com",
                        "Phones": [
                            {"PhoneType": "DEFAULT", "PhoneNumber": "03 9000 0000"},
                            {"PhoneType": "MOBILE", "PhoneNumber": "0411 111 111"},
                        ],
                    }
                ]
            },
        ),
    )

    await _deliver(receiver, _event("c-1", category="CONTACT"))

    await session.refresh(student)
    assert student.email == "augusta@example.com"
    assert student.mobile_phone == "0411 111 111"
    assert (student.first_name, student.last_name) == ("Ada", "Lovelace")


async def test_unhandled_and_unknown_resources_are_marked_processed(seed, receiver, session, fake_xero):
    await seed.tenant()

    await _deliver(
        receiver,
        _event("cn-1", category="CREDITNOTE"),
        _event("i-unknown"),
    )

    records = await _events(session)
    assert len(records) == 2
    assert all(record.processed_at is not None for record in records)
    assert fake_xero.requests == []


async def test_concurrent_events_for_one_payment_create_a_single_row(
    seed, session, session_factory, settings, http_client, fake_xero
):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    await seed.mark_synced(invoice, "i-1")
    fake_xero.add(
        "GET",
        f"{API}/Payments/p-9",
        httpx.Response(
            200,
            json={"Payments": [{"PaymentID": "p-9", "Invoice": {"InvoiceID": "i-1"}, "Amount": 50, "Date": "2025-03-14"}]},
        ),
    )
    receiver = XeroWebhookReceiver(session_factory, settings, http_client)
    assert settings.webhook_max_concurrency > 1

    response = await _deliver(
        receiver,
        _event("p-9", category="PAYMENT", event_type="CREATE"),
        _event("p-9", category="PAYMENT", event_type="UPDATE"),
    )

    assert response.status_code == 200
    result = await session.execute(select(Payments).where(Payments.xero_payment_id == "p-9"))
    payments = result.scalars().all()
    assert len(payments) == 1
    assert payments[0].amount_cents == 5000
    assert all(record.processed_at is not None for record in await _events(session))


async def test_tenant_lookup_failure_is_acknowledged(tmp_path, settings, http_client):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", poolclass=NullPool)
    receiver = XeroWebhookReceiver(build_session_factory(engine), settings, http_client)
    try:
        response = await _deliver(receiver, _event("i-1"))
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.body["ok"] is True


async def test_payment_upsert_updates_row_inserted_by_another_session(
    seed, session, session_factory, monkeypatch
):
    tenant = await seed.tenant()
    student = await seed.student(tenant)
    invoice = await seed.invoice(tenant, student)
    tenant_id, invoice_id = tenant.id, invoice.id
    async with session_factory() as other:
        await repo.upsert_synced_payment(
            other,
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            xero_payment_id="p-9",
            payment_date=date(2025, 3, 14),
            amount_cents=1000,
        )
        await other.commit()

    real_find = repo.find_payment_by_xero_id
    lookups = []

    async def miss_first_lookup(*args, **kwargs):
        lookups.append(kwargs["xero_payment_id"])
        if len(lookups) == 1:
            return None
        return await real_find(*args, **kwargs)

    monkeypatch.setattr(repo, "find_payment_by_xero_id", miss_first_lookup)

    payment, created = await repo.upsert_synced_payment(
        session,
        tenant_id=tenant_id,
        invoice_id=invoice_id,
        xero_payment_id="p-9",
        payment_date=date(2025, 3, 15),
        amount_cents=2500,
    )
    await session.commit()

    assert not created
    assert lookups == ["p-9", "p-9"]
    assert payment.amount_cents == 2500
    result = await session.execute(select(Payments).where(Payments.xero_payment_id == "p-9"))
    assert len(result.scalars().all()) == 1
