from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.core.config import get_settings
from ledgersync.core.errors import AuthenticationError, LedgerSyncError
from ledgersync.domain.models import utc_now
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.providers.accounting.base import AccountingProvider
from ledgersync.services.connections.manager import Clock, disconnect, ensure_fresh_token


logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    total: int = 0
    refreshed: int = 0
    failed: int = 0
    reconnect_required: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)


@dataclass
class CleanupSummary:
    total: int = 0
    deactivated: int = 0
    failed: int = 0


async def refresh_expiring_connections(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider: AccountingProvider | None = None,
    clock: Clock = utc_now,
) -> SweepSummary:
    """Refresh every active connection expiring within the sweep horizon.

    Each connection gets its own session and error boundary so one tenant's
    dead credential never stops the rest of the sweep.
    """
    settings = get_settings()
    summary = SweepSummary()
    async with session_factory() as session:
        rows = await connections_repo.list_expiring_connections(
            session, before=clock() + timedelta(seconds=settings.token_sweep_horizon_seconds)
        )
        connection_ids = [row.id for row in rows]
    summary.total = len(connection_ids)
    for connection_id in connection_ids:
        try:
            async with session_factory() as session:
                # Sweeps refresh ahead of the request-path skew window.
                await ensure_fresh_token(
                    session,
                    connection_id,
                    provider=provider,
                    clock=clock,
                    skew_seconds=settings.token_sweep_horizon_seconds,
                )
            summary.refreshed += 1
        except AuthenticationError as exc:
            summary.failed += 1
            summary.reconnect_required += 1
            summary.failures.append({"connection_id": connection_id, "error": str(exc)})
        except LedgerSyncError as exc:
            summary.failed += 1
            summary.failures.append({"connection_id": connection_id, "error": str(exc)})
            logger.warning("token_sweep_failed connection_id=%s error_type=%s", connection_id, type(exc).__name__)
    logger.info(
        "token_sweep_done total=%s refreshed=%s failed=%s reconnect_required=%s",
        summary.total,
        summary.refreshed,
        summary.failed,
        summary.reconnect_required,
    )
    return summary


async def cleanup_connections(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider: AccountingProvider | None = None,
    clock: Clock = utc_now,
) -> CleanupSummary:
    """Deactivate abandoned connections so they stop counting against provider quotas."""
    settings = get_settings()
    now = clock()
    summary = CleanupSummary()
    async with session_factory() as session:
        rows = await connections_repo.list_cleanup_candidates(
            session,
            unused_before=now - timedelta(days=settings.cleanup_unused_days),
            error_before=now - timedelta(days=settings.cleanup_error_days),
        )
        connection_ids = [row.id for row in rows]
    summary.total = len(connection_ids)
    for connection_id in connection_ids:
        try:
            async with session_factory() as session:
                await disconnect(session, connection_id=connection_id, provider=provider, now=now)
            summary.deactivated += 1
        except LedgerSyncError as exc:
            summary.failed += 1
            logger.warning("connection_cleanup_failed connection_id=%s error_type=%s", connection_id, type(exc).__name__)
    logger.info(
        "connection_cleanup_done total=%s deactivated=%s failed=%s",
        summary.total,
        summary.deactivated,
        summary.failed,
    )
    return summary
