from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.domain.models import Connection
from ledgersync.providers.accounting.base import EntityRecord, EntityReference, TokenBundle
from ledgersync.services.connections.manager import create_connection
from ledgersync.services.webhooks.ingress import compute_signature


T0 = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)
XERO_WEBHOOK_KEY = "xero-test-webhook-key"


class StepClock:
    """Manually advanced clock for backoff and expiry assertions."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def bundle(
    *,
    access_token: str = "access-initial",
    refresh_token: str = "refresh-initial",
    expires_in: int | None = 1800,
    tenant_id: str | None = None,
) -> TokenBundle:
    return TokenBundle(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        scopes=("accounting.transactions", "offline_access"),
        tenant_id=tenant_id,
    )


async def make_connection(
    session: AsyncSession,
    *,
    user_id: str = "u1",
    provider: str = "xero",
    tenant_id: str = "t1",
    expires_in: int | None = 1800,
    now: datetime = T0,
) -> Connection:
    return await create_connection(
        session,
        user_id=user_id,
        provider=provider,
        bundle=bundle(expires_in=expires_in),
        tenant_id=tenant_id,
        tenant_name=f"Org {tenant_id}",
        now=now,
    )


def record(
    entity_type: str,
    external_id: str,
    updated_at: datetime,
    *,
    references: tuple[EntityReference, ...] = (),
    **snapshot: Any,
) -> EntityRecord:
    payload = {"id": external_id, "updated": updated_at.isoformat()}
    payload.update({key: str(value) for key, value in snapshot.items()})
    return EntityRecord(
        entity_type=entity_type,
        external_id=external_id,
        remote_updated_at=updated_at,
        payload=payload,
        snapshot=snapshot,
        references=references,
    )


def xero_event(
    *,
    tenant_id: str = "t1",
    category: str = "CONTACT",
    event_type: str = "UPDATE",
    resource_id: str = "abc123",
    event_date: str = "2024-01-05T08:59:00.000",
) -> dict[str, Any]:
    return {
        "tenantId": tenant_id,
        "tenantType": "ORGANISATION",
        "eventCategory": category,
        "eventType": event_type,
        "eventDateUtc": event_date,
        "resourceId": resource_id,
        "resourceUrl": f"https://api.xero.com/api.xro/2.0/Contacts/{resource_id}",
    }


def signed(body: bytes, key: str = XERO_WEBHOOK_KEY) -> str:
    return compute_signature(body, key)
