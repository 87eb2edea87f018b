from __future__ import annotations

import json

from sqlalchemy import func, select

from ledgersync.core.config import get_settings
from ledgersync.domain.models import PendingWebhookEvent
from ledgersync.tests.utils.factories import signed, xero_event


async def _stored(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(PendingWebhookEvent))).scalar_one()


async def _post(client, body: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["x-xero-signature"] = signature
    return await client.post("/webhooks/xero", content=body, headers=headers)


async def test_signed_batch_is_acknowledged_with_empty_body(client, session_factory) -> None:
    body = json.dumps({"events": [xero_event(resource_id="c1"), xero_event(resource_id="c2")]}).encode()
    response = await _post(client, body, signed(body))
    assert response.status_code == 200
    assert response.content == b""
    assert await _stored(session_factory) == 2


async def test_redelivery_is_acknowledged_without_duplicates(client, session_factory) -> None:
    body = json.dumps({"events": [xero_event()]}).encode()
    first = await _post(client, body, signed(body))
    second = await _post(client, body, signed(body))
    assert first.status_code == second.status_code == 200
    assert await _stored(session_factory) == 1


async def test_invalid_or_missing_signature_is_rejected(client, session_factory) -> None:
    body = json.dumps({"events": [xero_event()]}).encode()
    assert (await _post(client, body, "c2lnbmF0dXJl")).status_code == 401
    assert (await _post(client, body, None)).status_code == 401
    assert await _stored(session_factory) == 0


async def test_unconfigured_key_is_server_error(client, session_factory, monkeypatch) -> None:
    monkeypatch.setenv("XERO_WEBHOOK_KEY", "")
    get_settings.cache_clear()
    body = json.dumps({"events": [xero_event()]}).encode()
    response = await _post(client, body, signed(body))
    assert response.status_code == 500
    assert await _stored(session_factory) == 0


async def test_signed_malformed_batch_is_bad_request(client) -> None:
    body = b'{"events": [{"tenantId": "t1"}]}'
    response = await _post(client, body, signed(body))
    assert response.status_code == 400


async def test_quickbooks_uses_its_own_header(client, session_factory) -> None:
    payload = {
        "eventNotifications": [
            {"realmId": "realm-1", "dataChangeEvent": {"entities": [{"name": "Invoice", "id": "42", "operation": "Update"}]}}
        ]
    }
    body = json.dumps(payload).encode()
    response = await client.post(
        "/webhooks/quickbooks",
        content=body,
        headers={"intuit-signature": signed(body, "qbo-test-verifier-token")},
    )
    assert response.status_code == 200
    assert await _stored(session_factory) == 1


async def test_unknown_provider_is_not_found(client) -> None:
    response = await client.post("/webhooks/sage", content=b"{}")
    assert response.status_code == 404
