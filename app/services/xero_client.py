from __future__ import annotations

import base64
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.http import open_client, request_with_retry_and_backoff
from app.core.logging import set_request_context
from app.core.security import decrypt_token, encrypt_token
from app.db import repo
from app.db.models import Tenants


class XeroError(RuntimeError):
    pass


class XeroOAuthError(XeroError):
    pass


class XeroNotConnectedError(XeroError):
    pass


class XeroApiError(XeroError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class XeroCredentials:
    tenant_id: uuid.UUID
    xero_tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenManager:
    AUTH_URL = "https://login.xero.com/identity/connect/authorize"
    TOKEN_URL = "https://identity.xero.com/connect/token"
    CONNECTIONS_URL = "https://api.xero.com/connections"
    REFRESH_THRESHOLD = timedelta(minutes=5)
    DEFAULT_EXPIRES_IN = 1800

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.logger = logging.getLogger("app.services.xero.tokens")

    async def get_valid_access_token(self, tenant_id: uuid.UUID) -> str:
        credentials = await self.get_valid_credentials(tenant_id)
        return credentials.access_token

    async def get_valid_credentials(self, tenant_id: uuid.UUID) -> XeroCredentials:
        """Load the tenant's credentials, refreshing them when they expire within five minutes.

        A failed refresh is logged and the stale access token is returned; the
        next API call then fails with 401 and the caller records the failure.
        """
        tenant = await repo.get_tenant_optional(self.session, tenant_id)
        if tenant is None:
            raise XeroNotConnectedError("Tenant not found")
        credentials = self._decrypt(tenant)

        if credentials.expires_at is None:
            return credentials
        if _as_utc(credentials.expires_at) > _now() + self.REFRESH_THRESHOLD:
            return credentials

        try:
            bundle = await self.refresh_tokens(refresh_token=credentials.refresh_token)
        except (XeroOAuthError, httpx.HTTPError) as exc:
            self.logger.warning(
                "xero_token_refresh_failed",
                extra={"tenant_id": str(tenant_id), "error": str(exc)},
            )
            return credentials

        return await self._store_refreshed(tenant, bundle)

    async def refresh_tokens(self, *, refresh_token: str) -> TokenBundle:
        payload = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        )
        return self._parse_token_response(payload, fallback_refresh_token=refresh_token)

    async def exchange_authorization_code(self, *, code: str) -> TokenBundle:
        payload = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": str(self.settings.xero_redirect_uri),
            }
        )
        return self._parse_token_response(payload)

    async def fetch_connections(self, *, access_token: str) -> list[dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        async with open_client(self.settings, self.http_client) as client:
            response = await request_with_retry_and_backoff(
                client,
                "GET",
                self.CONNECTIONS_URL,
                headers=headers,
                settings=self.settings,
            )
        if not response.is_success:
            raise XeroOAuthError(
                f"Failed to fetch Xero connections (status {response.status_code}): {response.text[:200]}"
            )
        data = response.json()
        return data if isinstance(data, list) else []

    def build_authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.xero_client_id,
            "redirect_uri": str(self.settings.xero_redirect_uri),
            "scope": self.settings.xero_scopes,
            "state": state,
        }
        return str(httpx.URL(self.AUTH_URL, params=params))

    async def connect_tenant(
        self,
        tenant: Tenants,
        *,
        bundle: TokenBundle,
        xero_tenant_id: str,
    ) -> bool:
        key = self.settings.xero_encryption_key
        stored = await repo.update_tenant_credentials(
            self.session,
            tenant_id=tenant.id,
            expected_version=tenant.credential_version,
            access_token_enc=encrypt_token(key, bundle.access_token),
            refresh_token_enc=encrypt_token(key, bundle.refresh_token),
            expires_at=bundle.expires_at,
            xero_tenant_id=xero_tenant_id,
        )
        self.logger.info(
            "xero_tenant_connected" if stored else "xero_tenant_connect_conflict",
            extra={"tenant_id": str(tenant.id), "xero_tenant_id": xero_tenant_id},
        )
        await repo.reload_tenant(self.session, tenant.id)
        return stored

    def _decrypt(self, tenant: Tenants) -> XeroCredentials:
        if (
            not tenant.xero_access_token_enc
            or not tenant.xero_refresh_token_enc
            or not tenant.xero_tenant_id
        ):
            raise XeroNotConnectedError("Xero not connected for this tenant")
        key = self.settings.xero_encryption_key
        try:
            access_token = decrypt_token(key, tenant.xero_access_token_enc)
            refresh_token = decrypt_token(key, tenant.xero_refresh_token_enc)
        except ValueError as exc:
            raise XeroNotConnectedError(f"Failed to decrypt Xero tokens: {exc}") from exc
        set_request_context(xero_tenant_id=tenant.xero_tenant_id)
        return XeroCredentials(
            tenant_id=tenant.id,
            xero_tenant_id=tenant.xero_tenant_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=tenant.xero_token_expires_at,
        )

    async def _store_refreshed(self, tenant: Tenants, bundle: TokenBundle) -> XeroCredentials:
        key = self.settings.xero_encryption_key
        stored = await repo.update_tenant_credentials(
            self.session,
            tenant_id=tenant.id,
            expected_version=tenant.credential_version,
            access_token_enc=encrypt_token(key, bundle.access_token),
            refresh_token_enc=encrypt_token(key, bundle.refresh_token),
            expires_at=bundle.expires_at,
        )
        current = await repo.reload_tenant(self.session, tenant.id)
        if current is None:
            raise XeroNotConnectedError("Tenant not found")
        if stored:
            self.logger.info(
                "xero_token_refreshed",
                extra={
                    "tenant_id": str(tenant.id),
                    "expires_at": bundle.expires_at.isoformat(),
                    "credential_version": current.credential_version,
                },
            )
            return XeroCredentials(
                tenant_id=current.id,
                xero_tenant_id=current.xero_tenant_id or "",
                access_token=bundle.access_token,
                refresh_token=bundle.refresh_token,
                expires_at=bundle.expires_at,
            )

        # another request refreshed first; its row is authoritative
        self.logger.info(
            "xero_token_refresh_superseded",
            extra={"tenant_id": str(tenant.id), "credential_version": current.credential_version},
        )
        return self._decrypt(current)

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        async with open_client(self.settings, self.http_client) as client:
            response = await request_with_retry_and_backoff(
                client,
                "POST",
                self.TOKEN_URL,
                data=data,
                headers=headers,
                settings=self.settings,
            )
        if response.status_code >= 400:
            self.logger.error(
                "xero_oauth_token_error",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            raise XeroOAuthError(
                f"Token request failed (status {response.status_code}): {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise XeroOAuthError("Token response is not JSON") from exc
        if not isinstance(payload, dict):
            raise XeroOAuthError("Token response is not an object")
        return payload

    def _parse_token_response(
        self,
        payload: dict[str, Any],
        *,
        fallback_refresh_token: Optional[str] = None,
    ) -> TokenBundle:
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token") or fallback_refresh_token
        if not access_token or not refresh_token:
            raise XeroOAuthError("Incomplete token response")
        try:
            expires_in = int(payload.get("expires_in") or self.DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = self.DEFAULT_EXPIRES_IN
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_now() + timedelta(seconds=expires_in),
        )

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.xero_client_id}:{self.settings.xero_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"


class XeroApiClient:
    API_BASE = "https://api.xero.com/api.xro/2.0"

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        token_manager: TokenManager | None = None,
    ):
        self.session = session
        self.tenant_id = tenant_id
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.token_manager = token_manager or TokenManager(session, self.settings, http_client)
        self.logger = logging.getLogger("app.services.xero.api")

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
    ) -> httpx.Response:
        """Send an authenticated call and hand back the response whatever its status.

        Only GET is retried on gateway errors; writes are sent exactly once.
        """
        credentials = await self.token_manager.get_valid_credentials(self.tenant_id)
        url = f"{self.API_BASE}{path}"
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Xero-Tenant-Id": credentials.xero_tenant_id,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        method = method.upper()
        async with open_client(self.settings, self.http_client) as client:
            start = perf_counter()
            if method == "GET":
                response = await request_with_retry_and_backoff(
                    client,
                    method,
                    url,
                    headers=headers,
                    settings=self.settings,
                )
            else:
                response = await client.request(method, url, headers=headers, json=body)
            latency_ms = (perf_counter() - start) * 1000

        self.logger.info(
            "xero_api_request",
            extra={
                "tenant_id": str(self.tenant_id),
                "method": method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_ms, 2),
            },
        )
        return response

    async def fetch_one(self, resource: str, resource_id: str) -> dict[str, Any]:
        """GET ``/<resource>/<id>`` and unwrap the ``{<resource>: [...]}`` envelope."""
        response = await self.request("GET", f"/{resource}/{resource_id}")
        if not response.is_success:
            raise XeroApiError(
                self.parse_error(response, response.text),
                status_code=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise XeroApiError(
                f"Xero returned invalid JSON for {resource} {resource_id}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        items = data.get(resource) if isinstance(data, dict) else None
        if not items:
            raise XeroApiError(
                f"Xero returned no {resource} for {resource_id}",
                status_code=response.status_code,
                body=response.text,
            )
        return items[0]

    @staticmethod
    def parse_error(response: httpx.Response, body_text: str) -> str:
        try:
            data = json.loads(body_text)
        except ValueError:
            data = None

        if isinstance(data, dict):
            exceptions = data.get("ApiExceptions")
            if isinstance(exceptions, list) and exceptions:
                exception = exceptions[0] if isinstance(exceptions[0], dict) else {}
                message = _validation_message(exception, exception.get("ValidationErrors"))
                if message:
                    return message
                return exception.get("Message") or "Xero API error"

            elements = data.get("Elements")
            if isinstance(elements, list):
                errors = [
                    error
                    for element in elements
                    if isinstance(element, dict)
                    for error in element.get("ValidationErrors") or []
                ]
                message = _validation_message(data, errors)
                if message:
                    return message

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            return f"Rate limit exceeded. Retry after {retry_after}s" if retry_after else "Rate limit exceeded"

        if response.status_code == 401:
            return "Authentication failed. Please reconnect Xero."

        return f"Xero API error ({response.status_code}): {body_text[:200]}"


def _validation_message(container: dict[str, Any], errors: Any) -> Optional[str]:
    if not isinstance(errors, list) or not errors:
        return None
    parts = []
    for error in errors:
        if not isinstance(error, dict):
            continue
        field_name = error.get("Field")
        text = error.get("Message") or ""
        parts.append(f"{field_name}: {text}" if field_name else text)
    if not parts:
        return None
    return f"{container.get('Message') or 'Validation error'}: {'; '.join(parts)}"
