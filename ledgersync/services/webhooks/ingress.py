from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
import hashlib
import hmac
import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import get_settings
from ledgersync.core.errors import ValidationError
from ledgersync.domain.models import utc_now
from ledgersync.persistence.repos.webhook_events import insert_pending_event
from ledgersync.services.telemetry import increment_counter
from ledgersync.services.webhooks.dialects import InboundEvent, get_webhook_dialect


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AckResult:
    status_code: int
    received: int = 0
    inserted: int = 0
    duplicates: int = 0
    reason: str | None = None


def compute_signature(raw_body: bytes, shared_key: str) -> str:
    digest = hmac.new(shared_key.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature_header: str | None, shared_key: str) -> bool:
    # HMAC covers the exact bytes received; parsing first would change them.
    if not signature_header or not shared_key:
        return False
    expected = compute_signature(raw_body, shared_key)
    return hmac.compare_digest(expected.encode("ascii"), signature_header.strip().encode("ascii", "ignore"))


def compute_dedupe_key(
    *,
    tenant_id: str,
    resource_id: str,
    category: str,
    event_type: str,
    event_date: datetime | None,
) -> str:
    """Stable identity of one notification across provider redeliveries."""
    material = {
        "tenant_id": tenant_id,
        "resource_id": resource_id,
        "category": category.upper(),
        "event_type": event_type.upper(),
        "event_date": event_date.isoformat() if event_date is not None else None,
    }
    canonical = json.dumps(material, separators=(",", ":"), sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _event_values(provider: str, event: InboundEvent) -> dict[str, object]:
    return {
        "provider": provider,
        "dedupe_key": compute_dedupe_key(
            tenant_id=event.tenant_id,
            resource_id=event.resource_id,
            category=event.category,
            event_type=event.event_type,
            event_date=event.event_date,
        ),
        "tenant_id": event.tenant_id,
        "category": event.category,
        "event_type": event.event_type,
        "resource_id": event.resource_id,
        "event_date": event.event_date,
        "raw_payload": event.raw,
        "status": "pending",
        "processed": False,
        "retry_count": 0,
        "created_at": utc_now(),
    }


async def ingest(
    session: AsyncSession,
    *,
    provider: str,
    raw_body: bytes,
    signature_header: str | None,
) -> AckResult:
    """Verify, parse and persist a notification batch; nothing here calls the provider.

    Processing happens later in the event processor, so the acknowledgement
    never reflects business outcomes.
    """
    dialect = get_webhook_dialect(provider)
    shared_key = dialect.shared_key(get_settings())
    if not shared_key:
        logger.error("webhook_key_missing provider=%s", dialect.provider)
        return AckResult(status_code=500, reason="webhook_key_missing")
    if not verify_signature(raw_body, signature_header, shared_key):
        increment_counter(f"webhook_signature_rejected_total.{dialect.provider}")
        logger.warning("webhook_signature_invalid provider=%s", dialect.provider)
        return AckResult(status_code=401, reason="invalid_signature")
    try:
        events = dialect.parse(raw_body)
    except ValidationError as exc:
        increment_counter(f"webhook_payload_rejected_total.{dialect.provider}")
        logger.warning("webhook_payload_invalid provider=%s error=%s", dialect.provider, exc)
        return AckResult(status_code=400, reason="malformed_payload")

    inserted = 0
    for event in events:
        if await insert_pending_event(session, _event_values(dialect.provider, event)):
            inserted += 1
    await session.commit()
    duplicates = len(events) - inserted
    increment_counter(f"webhook_events_ingested_total.{dialect.provider}", inserted)
    if duplicates:
        increment_counter(f"webhook_events_duplicate_total.{dialect.provider}", duplicates)
    logger.info(
        "webhook_batch_accepted provider=%s received=%s inserted=%s duplicates=%s",
        dialect.provider,
        len(events),
        inserted,
        duplicates,
    )
    return AckResult(status_code=200, received=len(events), inserted=inserted, duplicates=duplicates)
