from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from ledgersync.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Reconnect required", code="RECONNECT_REQUIRED", message="reconnect required for connection"),
    404: _response("Not found", code="NOT_FOUND", message="connection not found"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response(
        "Upstream unavailable",
        code="UPSTREAM_UNAVAILABLE",
        message="xero rate limited",
        details={"correlation_id": "3b2f6c1e"},
    ),
}

ADMIN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Missing or invalid admin token"),
}


# Provider callbacks authenticate by signature and health checks are anonymous.
PUBLIC_PATHS = frozenset({"/v1/health", "/webhooks/{provider}"})


def install_openapi(app: FastAPI, *, title: str) -> None:
    """Replace ``app.openapi`` with a generator that marks bearer-protected operations."""

    def build() -> dict[str, Any]:
        if app.openapi_schema is None:
            schema = get_openapi(title=title, version=API_VERSION, routes=app.routes)
            schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
            schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
            for path, operations in schema.get("paths", {}).items():
                if path in PUBLIC_PATHS:
                    continue
                for operation in operations.values():
                    operation.setdefault("security", [{"BearerAuth": []}])
            app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = build  # type: ignore[method-assign]
