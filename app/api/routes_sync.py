from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.db import repo
from app.db.session import get_session
from app.schemas.sync import BatchSyncRequest, BatchSyncResponse, SyncResultRead
from app.services.xero_sync import SyncRecordNotFoundError, SyncResult, XeroSyncService
from app.utils.validators import parse_uuid


router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("app.api.sync")


def get_sync_service(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> XeroSyncService:
    return XeroSyncService(session, settings)


def _to_read(result: SyncResult) -> SyncResultRead:
    return SyncResultRead.model_validate(result)


def _not_found(exc: SyncRecordNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/contacts/{student_id}", response_model=SyncResultRead)
async def sync_contact(
    student_id: str,
    service: XeroSyncService = Depends(get_sync_service),
):
    student_uuid = parse_uuid(student_id, "student_id")
    try:
        result = await service.sync_contact(student_uuid)
    except SyncRecordNotFoundError as exc:
        raise _not_found(exc) from exc
    return _to_read(result)


@router.post("/invoices/batch", response_model=BatchSyncResponse)
async def sync_pending_invoices(
    payload: BatchSyncRequest,
    session: AsyncSession = Depends(get_session),
    service: XeroSyncService = Depends(get_sync_service),
):
    if payload.tenant_id is not None:
        await repo.get_tenant_by_id(session, payload.tenant_id)
        logging_utils.set_request_context(tenant_id=str(payload.tenant_id))
    result = await service.sync_pending_invoices(tenant_id=payload.tenant_id, limit=payload.limit)
    return BatchSyncResponse(**asdict(result))


@router.post("/invoices/{invoice_id}", response_model=SyncResultRead)
async def sync_invoice(
    invoice_id: str,
    service: XeroSyncService = Depends(get_sync_service),
):
    invoice_uuid = parse_uuid(invoice_id, "invoice_id")
    try:
        result = await service.sync_invoice(invoice_uuid)
    except SyncRecordNotFoundError as exc:
        raise _not_found(exc) from exc
    return _to_read(result)


@router.post("/payments/{payment_id}", response_model=SyncResultRead)
async def sync_payment(
    payment_id: str,
    service: XeroSyncService = Depends(get_sync_service),
):
    payment_uuid = parse_uuid(payment_id, "payment_id")
    try:
        result = await service.sync_payment(payment_uuid)
    except SyncRecordNotFoundError as exc:
        raise _not_found(exc) from exc
    return _to_read(result)
