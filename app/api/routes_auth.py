from __future__ import annotations

import logging
import uuid
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.core.security import decode_oauth_state, encode_oauth_state
from app.db import repo
from app.db.session import get_session
from app.schemas.tenant import TenantConnectionRead, XeroConnectionResponse
from app.services.xero_client import TokenManager, XeroOAuthError
from app.utils.validators import parse_uuid


router = APIRouter(prefix="/auth/xero", tags=["auth"])
public_router = APIRouter(prefix="/auth/xero", tags=["auth"])
logger = logging.getLogger("app.api.auth")


def get_token_manager(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> TokenManager:
    return TokenManager(session, settings)


@router.get("/connect", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def connect_xero(
    tenant_id: str,
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
    token_manager: TokenManager = Depends(get_token_manager),
):
    tenant_uuid = parse_uuid(tenant_id, "tenant_id")
    logging_utils.set_request_context(tenant_id=str(tenant_uuid))

    tenant = await repo.get_tenant_by_id(session, tenant_uuid)
    state_payload = {
        "tenant_id": str(tenant.id),
        "nonce": str(uuid.uuid4()),
    }
    state = encode_oauth_state(settings.fernet_key, state_payload)

    auth_url = token_manager.build_authorization_url(state)
    logger.info("xero_connect_redirect", extra={"tenant_id": str(tenant.id)})
    return RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@public_router.get("/callback", response_model=XeroConnectionResponse)
async def xero_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
    token_manager: TokenManager = Depends(get_token_manager),
):
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {error_description or error}",
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth parameters",
        )

    try:
        state_payload = decode_oauth_state(settings.fernet_key, state)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    tenant_uuid = parse_uuid(state_payload.get("tenant_id", ""), "tenant_id")
    logging_utils.set_request_context(tenant_id=str(tenant_uuid))
    tenant = await repo.get_tenant_by_id(session, tenant_uuid)

    try:
        bundle = await token_manager.exchange_authorization_code(code=code)
        connections = await token_manager.fetch_connections(access_token=bundle.access_token)
    except (XeroOAuthError, httpx.HTTPError) as exc:
        logger.error(
            "xero_oauth_exchange_failed",
            extra={"tenant_id": str(tenant_uuid), "error": str(exc)},
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to exchange authorization code",
        ) from exc

    if not connections or not connections[0].get("tenantId"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Xero organisation was authorised",
        )
    connection = connections[0]

    stored = await token_manager.connect_tenant(
        tenant,
        bundle=bundle,
        xero_tenant_id=connection["tenantId"],
    )
    if not stored:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Tenant credentials changed during the connect flow; please retry",
        )

    tenant = await repo.get_tenant_by_id(session, tenant_uuid)
    logger.info(
        "xero_oauth_callback_completed",
        extra={
            "tenant_id": str(tenant_uuid),
            "xero_tenant_id": connection["tenantId"],
            "organisations": len(connections),
        },
    )
    return XeroConnectionResponse(
        message="Xero connected",
        tenant=TenantConnectionRead.model_validate(tenant),
        xero_tenant_name=connection.get("tenantName"),
    )
