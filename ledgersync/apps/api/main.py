from __future__ import annotations

import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ledgersync.apps.api.errors import (
    http_exception_handler,
    ledgersync_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from ledgersync.apps.api.openapi import install_openapi
from ledgersync.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from ledgersync.apps.api.routes.connections import router as connections_router
from ledgersync.apps.api.routes.health import router as health_router
from ledgersync.apps.api.routes.sync import router as sync_router
from ledgersync.apps.api.routes.webhook_events import router as webhook_events_router
from ledgersync.apps.api.routes.webhooks import router as webhooks_router
from ledgersync.core.config import get_settings
from ledgersync.core.errors import LedgerSyncError
from ledgersync.core.logging import configure_logging
from ledgersync.services.telemetry import record_request


_VERSIONED_ROUTERS = (health_router, connections_router, sync_router, webhook_events_router)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        started = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(LedgerSyncError)
    async def _ledgersync_exception_handler(request: Request, exc: LedgerSyncError):
        return await ledgersync_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Provider callbacks stay unversioned; their URLs are registered with the provider.
    app.include_router(webhooks_router)
    for router in _VERSIONED_ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    install_openapi(app, title=settings.app_name)
    return app


app = create_app()
