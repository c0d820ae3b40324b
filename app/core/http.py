from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from app.core.config import Settings, get_settings


RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})


class RetryableHTTPException(Exception):
    def __init__(self, response: httpx.Response, retry_after: Optional[float] = None):
        self.response = response
        self.retry_after = retry_after
        super().__init__(f"Retryable HTTP error: {response.status_code}")


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        value = float(header)
        return max(value, 0.0)
    except ValueError:
        try:
            retry_time = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            return None
        if retry_time.tzinfo is None:
            retry_time = retry_time.replace(tzinfo=timezone.utc)
        delta = (retry_time - datetime.now(timezone.utc)).total_seconds()
        return max(delta, 0.0)


def _calculate_wait(settings: Settings, retry_state: RetryCallState) -> float:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RetryableHTTPException) and exc.retry_after is not None:
            return min(exc.retry_after, settings.retry_max_wait_seconds)
    attempt = retry_state.attempt_number
    backoff = min(settings.retry_max_wait_seconds, 2 ** (attempt - 1))
    return backoff


def _should_retry(response: httpx.Response) -> bool:
    # 429 is surfaced to the caller with its Retry-After hint instead of retried here.
    return response.status_code in RETRYABLE_STATUS_CODES


def get_async_client(settings: Settings | None = None) -> httpx.AsyncClient:
    settings = settings or get_settings()
    timeout = httpx.Timeout(settings.http_timeout_seconds)
    return httpx.AsyncClient(timeout=timeout)


@asynccontextmanager
async def open_client(
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` untouched when supplied, otherwise a short-lived client."""
    if client is not None:
        yield client
        return
    async with get_async_client(settings) as owned:
        yield owned


async def request_with_retry_and_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    settings: Settings | None = None,
    **kwargs: Any,
) -> httpx.Response:
    settings = settings or get_settings()

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.retry_max_attempts),
            retry=retry_if_exception_type(RetryableHTTPException),
            wait=lambda retry_state: _calculate_wait(settings, retry_state),
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, **kwargs)
                if _should_retry(response):
                    raise RetryableHTTPException(response, parse_retry_after(response))
                return response
    except RetryableHTTPException as exc:
        return exc.response
    raise RuntimeError("unreachable")  # pragma: no cover
