from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from ledgersync.core.errors import AuthenticationError, NotFoundError, TransientUpstreamError, ValidationError
from ledgersync.providers.accounting.base import EntityReference, ProviderCredentials, TokenBundle, token_expiry
from ledgersync.providers.accounting.http import (
    parse_rate_limit_headers,
    raise_for_provider_status,
    send_provider_request,
)
from ledgersync.providers.accounting.xero import XeroProvider, parse_xero_datetime, to_entity_record


CREDS = ProviderCredentials(tenant_id="t1", access_token="access-abc")
T0 = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)


def _jwt(exp: int) -> str:
    # Signed with a key we never hold; only the exp claim is read.
    return jwt.encode({"exp": exp, "xero_userid": "u1"}, "not-the-provider-signing-key-0123456789", algorithm="HS256")


def test_parse_rate_limit_headers() -> None:
    info = parse_rate_limit_headers(
        {
            "X-MinLimit-Remaining": "3",
            "X-DayLimit-Remaining": "4000",
            "Retry-After": "27",
            "X-Rate-Limit-Problem": "minute",
        }
    )
    assert (info.minute_remaining, info.day_remaining, info.retry_after, info.problem) == (3, 4000, 27.0, "minute")
    assert parse_rate_limit_headers({"Retry-After": "soon"}).retry_after is None


@pytest.mark.parametrize(
    ("status", "error"),
    [(401, AuthenticationError), (403, AuthenticationError), (404, NotFoundError), (400, ValidationError)],
)
def test_status_mapping(status: int, error: type[Exception]) -> None:
    with pytest.raises(error):
        raise_for_provider_status(httpx.Response(status), integration="xero")


def test_rate_limit_carries_retry_after_and_correlation_id() -> None:
    response = httpx.Response(429, headers={"Retry-After": "30", "Xero-Correlation-Id": "cid-1"})
    with pytest.raises(TransientUpstreamError) as excinfo:
        raise_for_provider_status(response, integration="xero")
    assert excinfo.value.retry_after == 30.0
    assert excinfo.value.correlation_id == "cid-1"
    assert excinfo.value.status_code == 429


def test_token_expiry_prefers_jwt_exp() -> None:
    exp = int((T0 + timedelta(minutes=20)).timestamp())
    jwt_bundle = TokenBundle(access_token=_jwt(exp), refresh_token="r", expires_in=1800)
    opaque = TokenBundle(access_token="opaque", refresh_token="r", expires_in=None)
    assert token_expiry(jwt_bundle, now=T0, default_lifetime_seconds=1800) == T0 + timedelta(minutes=20)
    assert token_expiry(opaque, now=T0, default_lifetime_seconds=600) == T0 + timedelta(seconds=600)


def test_parse_xero_datetime_formats() -> None:
    assert parse_xero_datetime("/Date(1704445200000+0000)/") == T0
    assert parse_xero_datetime("2024-01-05T09:00:00") == T0
    assert parse_xero_datetime("") is None


def test_payment_record_references_invoice_and_contact() -> None:
    record = to_entity_record(
        "payment",
        {
            "PaymentID": "pay-1",
            "UpdatedDateUTC": "/Date(1704445200000+0000)/",
            "Amount": 100.5,
            "Invoice": {"InvoiceID": "inv-1", "Contact": {"ContactID": "c-1"}},
            "Account": {"AccountID": "acc-1"},
        },
    )
    assert record.external_id == "pay-1"
    assert record.references == (
        EntityReference("contact", "c-1"),
        EntityReference("invoice", "inv-1"),
        EntityReference("account", "acc-1"),
    )
    assert record.snapshot["contact_external_id"] == "c-1"


def test_record_without_updated_timestamp_is_rejected() -> None:
    with pytest.raises(ValidationError):
        to_entity_record("contact", {"ContactID": "c-1"})


async def test_server_errors_are_retried_inline() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    response = await send_provider_request(
        integration="xero", method="GET", url="https://api.test/x", transport=httpx.MockTransport(handler)
    )
    assert response.json() == {"ok": True}
    assert len(calls) == 2


async def test_long_rate_limit_is_surfaced_without_retry() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(429, headers={"Retry-After": "60"})

    with pytest.raises(TransientUpstreamError) as excinfo:
        await send_provider_request(
            integration="xero", method="GET", url="https://api.test/x", transport=httpx.MockTransport(handler)
        )
    assert excinfo.value.retry_after == 60.0
    assert len(calls) == 1


async def test_xero_fetch_entity_sends_tenant_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"Contacts": [{"ContactID": "c-1", "Name": "Acme", "UpdatedDateUTC": "/Date(1704445200000+0000)/"}]},
        )

    record = await XeroProvider(transport=httpx.MockTransport(handler)).fetch_entity(CREDS, "contact", "c-1")
    assert record.snapshot["name"] == "Acme"
    assert record.remote_updated_at == T0
    [request] = seen
    assert request.url.path.endswith("/Contacts/c-1")
    assert request.headers["Authorization"] == "Bearer access-abc"
    assert request.headers["xero-tenant-id"] == "t1"


async def test_xero_list_entities_pages_until_short_page() -> None:
    pages = {
        "1": [{"InvoiceID": "i1", "UpdatedDateUTC": "2024-01-04T00:00:00"}, {"InvoiceID": "i2", "UpdatedDateUTC": "2024-01-04T01:00:00"}],
        "2": [{"InvoiceID": "i3", "UpdatedDateUTC": "2024-01-04T02:00:00"}],
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"Invoices": pages[request.url.params["page"]]})

    provider = XeroProvider(transport=httpx.MockTransport(handler))
    batches = [
        batch
        async for batch in provider.list_entities(CREDS, "invoice", since=datetime(2024, 1, 1, tzinfo=timezone.utc), page_size=2)
    ]
    assert [[r.external_id for r in batch] for batch in batches] == [["i1", "i2"], ["i3"]]
    assert seen[0].headers["If-Modified-Since"] == "Mon, 01 Jan 2024 00:00:00 GMT"


async def test_xero_refresh_and_rejected_grant() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = dict(pair.split("=") for pair in request.content.decode().split("&"))
        if body["refresh_token"] == "dead":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={"access_token": "a2", "refresh_token": "r2", "expires_in": 1800, "scope": "accounting.transactions offline_access"},
        )

    provider = XeroProvider(transport=httpx.MockTransport(handler))
    bundle = await provider.refresh_token("live")
    assert (bundle.access_token, bundle.refresh_token, bundle.expires_in) == ("a2", "r2", 1800)
    assert bundle.scopes == ("accounting.transactions", "offline_access")
    with pytest.raises(AuthenticationError):
        await provider.refresh_token("dead")
