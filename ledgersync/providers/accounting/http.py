from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Mapping

import httpx

from ledgersync.core.config import get_settings
from ledgersync.core.errors import (
    AuthenticationError,
    NotFoundError,
    TransientUpstreamError,
    ValidationError,
)
from ledgersync.providers.accounting.base import TokenBundle
from ledgersync.services.resilience import get_circuit_breaker, retry_async
from ledgersync.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_CORRELATION_HEADERS = ("Xero-Correlation-Id", "intuit_tid", "X-Correlation-Id")
# Warn operators before a tenant exhausts its per-minute allowance.
_LOW_MINUTE_REMAINING = 5


@dataclass(frozen=True)
class RateLimitInfo:
    minute_remaining: int | None
    day_remaining: int | None
    retry_after: float | None
    problem: str | None


def _int_header(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitInfo:
    retry_after_raw = headers.get("Retry-After")
    retry_after: float | None = None
    if retry_after_raw is not None:
        try:
            retry_after = max(0.0, float(retry_after_raw))
        except ValueError:
            retry_after = None
    return RateLimitInfo(
        minute_remaining=_int_header(headers, "X-MinLimit-Remaining"),
        day_remaining=_int_header(headers, "X-DayLimit-Remaining"),
        retry_after=retry_after,
        problem=headers.get("X-Rate-Limit-Problem"),
    )


def correlation_id(headers: Mapping[str, str]) -> str | None:
    for name in _CORRELATION_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def raise_for_provider_status(response: httpx.Response, *, integration: str) -> None:
    """Translate an upstream status into the domain error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    cid = correlation_id(response.headers)
    if status == 429:
        info = parse_rate_limit_headers(response.headers)
        increment_counter(f"provider_rate_limited_total.{integration}")
        raise TransientUpstreamError(
            f"{integration} rate limit hit problem={info.problem or 'unspecified'}",
            retry_after=info.retry_after,
            correlation_id=cid,
            status_code=status,
        )
    if status >= 500:
        raise TransientUpstreamError(
            f"{integration} upstream error status={status}", correlation_id=cid, status_code=status
        )
    if status in (401, 403):
        raise AuthenticationError(f"{integration} rejected credentials status={status} correlation_id={cid}")
    if status == 404:
        raise NotFoundError(f"{integration} resource not found correlation_id={cid}")
    raise ValidationError(f"{integration} rejected request status={status} correlation_id={cid}")


def _is_breaker_failure(status: int) -> bool:
    return status == 429 or status >= 500


async def send_provider_request(
    *,
    integration: str,
    method: str,
    url: str,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one provider call behind the integration's breaker, with bounded inline retries."""
    settings = get_settings()
    breaker = await get_circuit_breaker(integration)

    async def _call() -> httpx.Response:
        await breaker.before_call()
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                transport=transport, timeout=settings.ext_call_timeout_ms / 1000.0
            ) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            record_external_call(
                integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            await breaker.record_failure()
            raise TransientUpstreamError(f"{integration} unreachable error={type(exc).__name__}") from exc
        failed = _is_breaker_failure(response.status_code)
        record_external_call(
            integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=not failed
        )
        if failed:
            await breaker.record_failure()
        else:
            await breaker.record_success()
        info = parse_rate_limit_headers(response.headers)
        if info.minute_remaining is not None and info.minute_remaining <= _LOW_MINUTE_REMAINING:
            logger.warning(
                "provider_rate_limit_low integration=%s minute_remaining=%s day_remaining=%s",
                integration,
                info.minute_remaining,
                info.day_remaining,
            )
        raise_for_provider_status(response, integration=integration)
        return response

    try:
        return await retry_async(_call)
    except TimeoutError as exc:
        raise TransientUpstreamError(f"{integration} call timed out") from exc


async def request_token_grant(
    *,
    integration: str,
    url: str,
    data: dict[str, str],
    auth: tuple[str, str],
    transport: httpx.AsyncBaseTransport | None = None,
) -> TokenBundle:
    # A 400/401 from the token endpoint means the grant itself is dead (invalid_grant, revoked client).
    try:
        response = await send_provider_request(
            integration=f"{integration}.token",
            method="POST",
            url=url,
            data=data,
            auth=auth,
            headers={"Accept": "application/json"},
            transport=transport,
        )
    except ValidationError as exc:
        raise AuthenticationError(f"{integration} token grant rejected") from exc
    payload = response.json()
    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token")
    if not access_token or not refresh_token:
        raise AuthenticationError(f"{integration} token response missing tokens")
    scope = payload.get("scope") or ""
    expires_in = payload.get("expires_in")
    return TokenBundle(
        access_token=str(access_token),
        refresh_token=str(refresh_token),
        expires_in=int(expires_in) if expires_in is not None else None,
        scopes=tuple(part for part in str(scope).split() if part),
    )
