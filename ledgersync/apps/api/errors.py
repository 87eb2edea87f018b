from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ledgersync.apps.api.response import error_response, is_versioned_request
from ledgersync.core.errors import (
    AuthenticationError,
    CryptoError,
    IntegrationUnavailableError,
    LedgerSyncError,
    NotFoundError,
    ProviderConfigError,
    TerminalFailure,
    TransientUpstreamError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; lookup walks the exception's MRO.
_DOMAIN_ERRORS: dict[type[LedgerSyncError], tuple[int, str]] = {
    AuthenticationError: (401, "RECONNECT_REQUIRED"),
    NotFoundError: (404, "NOT_FOUND"),
    ValidationError: (422, "VALIDATION_ERROR"),
    IntegrationUnavailableError: (503, "INTEGRATION_UNAVAILABLE"),
    TransientUpstreamError: (503, "UPSTREAM_UNAVAILABLE"),
    TerminalFailure: (502, "UPSTREAM_FAILED"),
    ProviderConfigError: (500, "PROVIDER_NOT_CONFIGURED"),
    CryptoError: (500, "CREDENTIAL_ERROR"),
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _classify(exc: LedgerSyncError) -> tuple[int, str]:
    for cls in type(exc).__mro__:
        if cls in _DOMAIN_ERRORS:
            return _DOMAIN_ERRORS[cls]
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def ledgersync_exception_handler(request: Request, exc: LedgerSyncError) -> JSONResponse:
    status_code, code = _classify(exc)
    headers: dict[str, str] = {}
    details: dict[str, Any] | None = None
    if isinstance(exc, TransientUpstreamError):
        if exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        if exc.correlation_id:
            details = {"correlation_id": exc.correlation_id}
    if status_code >= 500:
        logger.warning("request_failed path=%s error_type=%s", request.url.path, type(exc).__name__)
    # Crypto and config failures carry internals; clients only see the code.
    message = str(exc) if status_code < 500 or status_code == 503 else "Internal server error"
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
