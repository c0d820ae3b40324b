from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from app.api import routes_auth, routes_filters, routes_sync, routes_webhooks
from app.core.config import Settings, get_settings
from app.core import logging as logging_utils
from app.db.session import get_engine
from app.filters.types import FilterError
from app.services.xero_client import XeroNotConnectedError

RequestHandler = Callable[[Request], Awaitable[Response]]


async def enforce_api_key(
    api_key_header: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if api_key_header is None or api_key_header != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    logging_utils.configure_logging()
    logger = logging.getLogger("app.lifespan")
    logger.info(
        "application_startup",
        extra={"environment": settings.environment, "version": settings.app_version},
    )
    try:
        yield
    finally:
        await get_engine().dispose()
        logger.info("application_shutdown")


def error_response(
    request: Request,
    status_code: int,
    message: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    """Render the shared ``{code, message, details, correlation_id}`` envelope."""
    request_id = getattr(request.state, "request_id", None)
    payload = {
        "code": status_code,
        "message": message,
        "details": details,
        "correlation_id": request_id,
    }
    response = JSONResponse(status_code=status_code, content=payload)
    if request_id:
        response.headers["X-Request-Id"] = request_id
    return response


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return error_response(request, exc.status_code, exc.detail)
        return error_response(request, exc.status_code, "Request failed", exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            exc.errors(),
        )

    @app.exception_handler(FilterError)
    async def filter_exception_handler(request: Request, exc: FilterError) -> JSONResponse:
        return error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(XeroNotConnectedError)
    async def xero_not_connected_handler(
        request: Request, exc: XeroNotConnectedError
    ) -> JSONResponse:
        return error_response(request, status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.getLogger("app.errors").exception(
            "unhandled_error",
            extra={"correlation_id": getattr(request.state, "request_id", None)},
        )
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
        )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="RTO Sync",
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: RequestHandler):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        logging_utils.set_request_context(request_id=request_id)
        start = perf_counter()
        response_status = status.HTTP_500_INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            response_status = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        finally:
            logging.getLogger("app.request").info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response_status,
                    "duration_ms": round((perf_counter() - start) * 1000, 2),
                },
            )
            logging_utils.clear_request_context()

    install_error_handlers(app)

    # Xero webhooks and the OAuth callback authenticate themselves
    protected_router = APIRouter(dependencies=[Depends(enforce_api_key)])
    protected_router.include_router(routes_auth.router)
    protected_router.include_router(routes_sync.router)
    protected_router.include_router(routes_webhooks.router)
    protected_router.include_router(routes_filters.router)
    app.include_router(protected_router)
    app.include_router(routes_auth.public_router)
    app.include_router(routes_webhooks.public_router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":
    run()
