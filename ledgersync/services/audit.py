from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.logging import redact_mapping
from ledgersync.domain.models import AuditEvent, utc_now


logger = logging.getLogger(__name__)


async def record_event(
    *,
    session: AsyncSession,
    event_type: str,
    outcome: str,
    user_id: str | None = None,
    tenant_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    """Stage a connection lifecycle audit row in the caller's transaction.

    Nothing is flushed here: the row lands with the commit that performs the
    change it describes, and disappears with that change on rollback. Metadata
    goes through the same key redaction as structured log fields.
    """
    row = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        user_id=user_id,
        tenant_id=tenant_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=redact_mapping(metadata) if metadata else {},
        error_code=error_code,
    )
    session.add(row)
    logger.debug(
        "audit_event_staged event_type=%s outcome=%s user_id=%s resource_id=%s",
        event_type,
        outcome,
        user_id,
        resource_id,
    )
    return row
