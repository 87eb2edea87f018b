from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.core.config import get_settings
from ledgersync.core.errors import LedgerSyncError, NotFoundError, ValidationError
from ledgersync.core.logging import redact_text
from ledgersync.domain.models import SyncRun, utc_now
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.persistence.repos import watermarks as watermarks_repo
from ledgersync.providers.accounting.base import ENTITY_DEPENDENCIES, ENTITY_TYPES, AccountingProvider
from ledgersync.providers.accounting.factory import get_accounting_provider
from ledgersync.services.connections.manager import Clock, ensure_fresh_token, record_api_call
from ledgersync.services.entity_cache import apply_record
from ledgersync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ProviderResolver = Callable[[str], AccountingProvider]


class Deadline:
    """Wall-clock budget for one sync run, checked only between pages."""

    def __init__(self, seconds: float, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._expires_at = monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._monotonic())

    def exhausted(self) -> bool:
        return self._monotonic() >= self._expires_at


@dataclass
class EntitySyncResult:
    entity_type: str
    status: str = "running"
    record_count: int = 0
    pages: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    unresolved: int = 0
    full_sync: bool = False
    watermark: datetime | None = None
    error: str | None = None

    def as_summary(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "record_count": self.record_count,
            "pages": self.pages,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "stale": self.stale,
            "unresolved": self.unresolved,
            "full_sync": self.full_sync,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "error": self.error,
        }


@dataclass
class SyncOutcome:
    success: bool
    record_count: int
    correlation_id: str
    status: str
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def as_response(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "record_count": self.record_count,
            "summary": self.summary,
            "error": self.error,
            "correlation_id": self.correlation_id,
        }


def dependency_order(entity_types: list[str] | None = None) -> list[str]:
    """Order entity types so referenced types always sync before their referrers."""
    requested = set(entity_types or ENTITY_TYPES)
    unknown = requested.difference(ENTITY_TYPES)
    if unknown:
        raise ValidationError(f"unsupported entity types: {', '.join(sorted(unknown))}")
    ordered: list[str] = []
    remaining = [entity_type for entity_type in ENTITY_TYPES if entity_type in requested]
    while remaining:
        for entity_type in remaining:
            deps = [dep for dep in ENTITY_DEPENDENCIES[entity_type] if dep in requested]
            if all(dep in ordered for dep in deps):
                ordered.append(entity_type)
                remaining.remove(entity_type)
                break
    return ordered


async def sync_entity_type(
    session: AsyncSession,
    connection_id: str,
    entity_type: str,
    *,
    provider: AccountingProvider,
    deadline: Deadline,
    clock: Clock = utc_now,
    page_size: int | None = None,
) -> EntitySyncResult:
    """Pull everything modified since the watermark, committing page by page.

    The watermark only advances when every page has been applied, and it
    advances to the moment the run started so edits made while paging are
    picked up next time.
    """
    page_size = page_size or get_settings().sync_page_size
    result = EntitySyncResult(entity_type=entity_type)
    connection = await ensure_fresh_token(session, connection_id, provider=provider, clock=clock)
    sync_started_at = clock()
    since = await watermarks_repo.get_watermark(session, tenant_id=connection.tenant_id, entity_type=entity_type)
    result.full_sync = since is None

    async with aclosing(
        provider.list_entities(connection.credentials(), entity_type, since=since, page_size=page_size)
    ) as pages:
        while True:
            if deadline.exhausted():
                result.status = "deadline_reached"
                increment_counter("sync_deadline_reached_total")
                logger.info(
                    "sync_deadline_reached tenant_id=%s entity_type=%s pages=%s records=%s",
                    connection.tenant_id,
                    entity_type,
                    result.pages,
                    result.record_count,
                )
                return result
            try:
                page = await pages.__anext__()
            except StopAsyncIteration:
                break
            for record in page:
                applied = await apply_record(session, tenant_id=connection.tenant_id, record=record, now=clock())
                setattr(result, applied.outcome, getattr(result, applied.outcome) + 1)
                result.unresolved += len(applied.unresolved)
                result.record_count += 1
            await session.commit()
            result.pages += 1

    await watermarks_repo.set_watermark(
        session, tenant_id=connection.tenant_id, entity_type=entity_type, watermark=sync_started_at
    )
    await session.commit()
    result.status = "completed"
    result.watermark = sync_started_at
    logger.info(
        "sync_entity_completed tenant_id=%s entity_type=%s records=%s watermark=%s",
        connection.tenant_id,
        entity_type,
        result.record_count,
        sync_started_at.isoformat(),
    )
    return result


async def sync_connection(
    session: AsyncSession,
    connection_id: str,
    *,
    entity_types: list[str] | None = None,
    provider: AccountingProvider | None = None,
    clock: Clock = utc_now,
    deadline: Deadline | None = None,
    correlation_id: str | None = None,
) -> SyncOutcome:
    """Sync one connection's entity types in dependency order and record the run."""
    settings = get_settings()
    order = dependency_order(entity_types)
    row = await connections_repo.get_connection(session, connection_id, reload=True)
    if row is None:
        raise NotFoundError(f"connection {connection_id} not found")
    provider = provider or get_accounting_provider(row.provider)
    deadline = deadline or Deadline(settings.sync_deadline_seconds)
    correlation_id = correlation_id or uuid4().hex

    run = SyncRun(
        connection_id=row.id,
        tenant_id=row.tenant_id,
        correlation_id=correlation_id,
        status="running",
        entity_types=order,
        started_at=clock(),
    )
    session.add(run)
    await session.commit()
    logger.info(
        "sync_started connection_id=%s tenant_id=%s correlation_id=%s entity_types=%s",
        row.id,
        row.tenant_id,
        correlation_id,
        ",".join(order),
    )

    summary: dict[str, Any] = {}
    record_count = 0
    status = "succeeded"
    error: str | None = None
    for entity_type in order:
        try:
            result = await sync_entity_type(
                session, connection_id, entity_type, provider=provider, deadline=deadline, clock=clock
            )
        except Exception as exc:  # noqa: BLE001 - the run row must never be left running
            await session.rollback()
            status = "failed"
            error = f"{type(exc).__name__}: {redact_text(str(exc))}"
            summary[entity_type] = {"status": "failed", "error": error}
            increment_counter("sync_failures_total")
            log = logger.warning if isinstance(exc, LedgerSyncError) else logger.exception
            log(
                "sync_entity_failed connection_id=%s entity_type=%s correlation_id=%s error_type=%s",
                connection_id,
                entity_type,
                correlation_id,
                type(exc).__name__,
            )
            break
        summary[entity_type] = result.as_summary()
        record_count += result.record_count
        if result.status == "deadline_reached":
            status = "incomplete"
            break

    run.status = status
    run.record_count = record_count
    run.summary_json = summary
    run.error = error
    run.finished_at = clock()
    await session.commit()
    if status != "failed":
        await record_api_call(session, connection_id=connection_id, now=clock())
    logger.info(
        "sync_finished connection_id=%s correlation_id=%s status=%s records=%s",
        connection_id,
        correlation_id,
        status,
        record_count,
    )
    return SyncOutcome(
        success=status != "failed",
        record_count=record_count,
        correlation_id=correlation_id,
        status=status,
        summary=summary,
        error=error,
    )


@dataclass
class ScheduledSyncSummary:
    connections: int = 0
    succeeded: int = 0
    incomplete: int = 0
    failed: int = 0
    record_count: int = 0


async def run_scheduled_sync(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider_resolver: ProviderResolver = get_accounting_provider,
    clock: Clock = utc_now,
    provider: str | None = None,
) -> ScheduledSyncSummary:
    """Sync every active connection, isolating each tenant's failures."""
    async with session_factory() as session:
        connection_ids = [row.id for row in await connections_repo.list_active_connections(session, provider=provider)]

    summary = ScheduledSyncSummary(connections=len(connection_ids))
    for connection_id in connection_ids:
        async with session_factory() as session:
            try:
                row = await connections_repo.get_connection(session, connection_id)
                if row is None:
                    continue
                outcome = await sync_connection(
                    session, connection_id, provider=provider_resolver(row.provider), clock=clock
                )
            except Exception:  # noqa: BLE001 - one tenant must not stop the batch
                logger.exception("scheduled_sync_connection_failed connection_id=%s", connection_id)
                summary.failed += 1
                continue
        summary.record_count += outcome.record_count
        if outcome.status == "failed":
            summary.failed += 1
        elif outcome.status == "incomplete":
            summary.incomplete += 1
        else:
            summary.succeeded += 1
    logger.info(
        "scheduled_sync_finished connections=%s succeeded=%s incomplete=%s failed=%s records=%s",
        summary.connections,
        summary.succeeded,
        summary.incomplete,
        summary.failed,
        summary.record_count,
    )
    return summary
