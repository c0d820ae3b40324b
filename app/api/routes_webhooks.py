from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.db import repo
from app.db.session import get_session, get_session_factory
from app.schemas.webhook import ReplayRequest, ReplayResponse
from app.services.xero_webhook import XeroWebhookReceiver


router = APIRouter(prefix="/webhooks", tags=["webhooks"])
public_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("app.api.webhooks")


def get_webhook_receiver(settings: Settings = Depends(get_settings)) -> XeroWebhookReceiver:
    return XeroWebhookReceiver(get_session_factory(), settings)


@public_router.post("/xero")
async def receive_xero_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="x-xero-signature"),
    xero_tenant_id: Optional[str] = Header(default=None, alias="xero-tenant-id"),
    receiver: XeroWebhookReceiver = Depends(get_webhook_receiver),
) -> JSONResponse:
    # the signature covers the exact bytes Xero sent, so the body is never re-serialized
    raw_body = await request.body()
    result = await receiver.handle(raw_body, signature, xero_tenant_id)
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/xero/replay", response_model=ReplayResponse)
async def replay_xero_events(
    payload: ReplayRequest,
    session: AsyncSession = Depends(get_session),
    receiver: XeroWebhookReceiver = Depends(get_webhook_receiver),
):
    await repo.get_tenant_by_id(session, payload.tenant_id)
    result = await receiver.replay_unprocessed(payload.tenant_id, payload.limit)
    logger.info(
        "xero_webhook_replay_requested",
        extra={"tenant_id": str(payload.tenant_id), "total": result.total},
    )
    return ReplayResponse(**asdict(result))
