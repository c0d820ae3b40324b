from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("FERNET_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("XERO_ENCRYPTION_KEY", "unit-test-encryption-key")
os.environ.setdefault("XERO_CLIENT_ID", "xero-client-id")
os.environ.setdefault("XERO_CLIENT_SECRET", "xero-client-secret")
os.environ.setdefault("XERO_REDIRECT_URI", "https://sms.example.com/auth/xero/callback")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused.db")

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import Settings, get_settings
from app.core.security import encrypt_token
from app.db.models import (
    Base,
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
)
from app.db.session import build_session_factory


XERO_TENANT_ID = "xero-org-1"
WEBHOOK_KEY = "webhook-signing-key"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(
        update={
            "retry_max_wait_seconds": 0.0,
            "sync_batch_delay_seconds": 0.0,
        }
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


class FakeXero:
    """Routes requests by ``(method, path)``; queued responses are served in order, the last one repeats."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[Responder]] = {}

    def add(self, method: str, path: str, *responses: Responder) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method.upper() and request.url.path == path
        ]

    def json_body(self, request: httpx.Request) -> Any:
        return json.loads(request.content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"Message": f"no route for {request.url.path}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request) if callable(responder) else responder


@pytest.fixture
def fake_xero() -> FakeXero:
    return FakeXero()


@pytest.fixture
async def http_client(fake_xero):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_xero)) as client:
        yield client


@dataclass
class Seeder:
    session: Any
    settings: Settings

    async def tenant(
        self,
        *,
        connected: bool = True,
        xero_tenant_id: Optional[str] = XERO_TENANT_ID,
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        webhook_key: Optional[str] = WEBHOOK_KEY,
        payment_account_code: Optional[str] = None,
    ) -> Tenants:
        key = self.settings.xero_encryption_key
        tenant = Tenants(
            name="Acme Training",
            xero_tenant_id=xero_tenant_id,
            xero_webhook_key=webhook_key,
            xero_default_payment_account_code=payment_account_code,
        )
        if connected:
            tenant.xero_access_token_enc = encrypt_token(key, access_token)
            tenant.xero_refresh_token_enc = encrypt_token(key, refresh_token)
            tenant.xero_token_expires_at = (
                datetime.now(timezone.utc) + expires_in if expires_in is not None else None
            )
        return await self._save(tenant)

    async def student(self, tenant: Tenants, **overrides: Any) -> Students:
        values = {
            "tenant_id": tenant.id,
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "mobile_phone": "0400 000 000",
            "street_address": "1 Analytical Way",
            "suburb": "Melbourne",
            "state": "VIC",
            "postcode": "3000",
        }
        values.update(overrides)
        return await self._save(Students(**values))

    async def invoice(
        self,
        tenant: Tenants,
        student: Students,
        *,
        lines: tuple[dict[str, Any], ...] = (),
        account_code: Optional[str] = "210",
        **overrides: Any,
    ) -> Invoices:
        program = await self._save(Programs(tenant_id=tenant.id, name="Diploma of Nursing", code="HLT54121"))
        template = await self._save(
            PaymentPlanTemplates(tenant_id=tenant.id, name="Monthly", xero_account_code=account_code)
        )
        enrollment = await self._save(
            Enrollments(
                tenant_id=tenant.id,
                student_id=student.id,
                program_id=program.id,
                payment_plan_template_id=template.id,
            )
        )
        values = {
            "tenant_id": tenant.id,
            "enrollment_id": enrollment.id,
            "invoice_number": "INV-0001",
            "status": InvoiceStatus.SENT,
            "issue_date": date(2025, 3, 1),
            "due_date": date(2025, 3, 15),
            "amount_due_cents": 25000,
        }
        values.update(overrides)
        invoice = await self._save(Invoices(**values))
        for index, line in enumerate(lines):
            await self._save(InvoiceLines(invoice_id=invoice.id, sequence_order=index, **line))
        return invoice

    async def payment(self, tenant: Tenants, invoice: Invoices, **overrides: Any) -> Payments:
        values = {
            "tenant_id": tenant.id,
            "invoice_id": invoice.id,
            "payment_date": date(2025, 3, 10),
            "amount_cents": 10000,
        }
        values.update(overrides)
        return await self._save(Payments(**values))

    async def mark_synced(self, record: Any, external_id: str) -> None:
        attr = {
            Students: "xero_contact_id",
            Invoices: "xero_invoice_id",
            Payments: "xero_payment_id",
        }[type(record)]
        setattr(record, attr, external_id)
        record.xero_sync_status = SyncStatus.SYNCED
        await self.session.commit()

    async def _save(self, record: Any) -> Any:
        self.session.add(record)
        await self.session.commit()
        return record


@pytest.fixture
def seed(session, settings) -> Seeder:
    return Seeder(session, settings)
