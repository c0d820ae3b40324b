from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tenant_id_ctx: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
xero_tenant_id_ctx: ContextVar[Optional[str]] = ContextVar("xero_tenant_id", default=None)


class RequestContextFilter(logging.Filter):
    """Injects request scoped context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        # explicit extra values win over the ambient context
        for attr, ctx in (
            ("request_id", request_id_ctx),
            ("tenant_id", tenant_id_ctx),
            ("xero_tenant_id", xero_tenant_id_ctx),
        ):
            if getattr(record, attr, None) is None:
                setattr(record, attr, ctx.get())
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure JSON structured logging."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {
                    "()": RequestContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                }
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    xero_tenant_id: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if tenant_id is not None:
        tenant_id_ctx.set(tenant_id)
    if xero_tenant_id is not None:
        xero_tenant_id_ctx.set(xero_tenant_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    tenant_id_ctx.set(None)
    xero_tenant_id_ctx.set(None)


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return "***redacted***"


def sanitize_payload(payload: Any) -> Any:
    """Remove obvious secrets from a payload while keeping business fields."""

    sensitive_keys = {
        "authorization",
        "access_token",
        "refresh_token",
        "token",
        "secret",
        "password",
    }

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in sensitive_keys):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(payload)


def _base_sync_log_extra(
    *,
    event: str,
    tenant_id: Optional[str],
    resource_type: str,
    local_id: Optional[str],
    external_id: Optional[str],
    payload: Any = None,
) -> dict[str, Any]:
    return {
        "event": event,
        "request_id": request_id_ctx.get(),
        "tenant_id": tenant_id,
        "resource_type": resource_type,
        "local_id": local_id,
        "external_id": external_id,
        "payload": payload,
    }


def log_sync_started(
    *,
    tenant_id: Optional[str],
    resource_type: str,
    local_id: Optional[str],
    payload: Any,
) -> None:
    logger = logging.getLogger("app.xero.sync")
    logger.info(
        "xero_sync_attempt_started",
        extra=_base_sync_log_extra(
            event="xero_sync_attempt_started",
            tenant_id=tenant_id,
            resource_type=resource_type,
            local_id=local_id,
            external_id=None,
            payload=sanitize_payload(payload),
        ),
    )


def log_sync_finished(
    *,
    tenant_id: Optional[str],
    resource_type: str,
    local_id: Optional[str],
    external_id: Optional[str],
    result: str,
    xero_status_code: Optional[int] = None,
    latency_ms: Optional[float] = None,
    error_message: Optional[str] = None,
    idempotent_reuse: bool = False,
) -> None:
    logger = logging.getLogger("app.xero.sync")
    logger.info(
        "xero_sync_attempt_finished",
        extra={
            **_base_sync_log_extra(
                event="xero_sync_attempt_finished",
                tenant_id=tenant_id,
                resource_type=resource_type,
                local_id=local_id,
                external_id=external_id,
            ),
            "xero_status_code": xero_status_code,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "result": result,
            "error_message": error_message,
            "idempotent_reuse": idempotent_reuse,
        },
    )
