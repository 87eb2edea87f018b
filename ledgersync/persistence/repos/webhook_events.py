from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.domain.models import PendingWebhookEvent
from ledgersync.persistence.upsert import insert_or_ignore


async def insert_pending_event(session: AsyncSession, values: dict[str, Any]) -> bool:
    # Redelivered notifications collide on dedupe_key and become no-ops.
    return await insert_or_ignore(session, PendingWebhookEvent, values, index_elements=["dedupe_key"])


def _due_predicates(now: datetime) -> tuple[Any, ...]:
    return (
        PendingWebhookEvent.processed.is_(False),
        or_(PendingWebhookEvent.next_attempt_at.is_(None), PendingWebhookEvent.next_attempt_at <= now),
        or_(PendingWebhookEvent.claimed_until.is_(None), PendingWebhookEvent.claimed_until < now),
    )


async def claim_due_events(
    session: AsyncSession,
    *,
    claim_token: str,
    now: datetime,
    limit: int,
    claim_ttl_seconds: int,
) -> list[PendingWebhookEvent]:
    """Claim up to ``limit`` due events for ``claim_token``.

    The update re-checks the due predicates, so a row another processor
    claimed between the select and the update is left alone; only rows
    stamped with our token come back.
    """
    candidate_ids = (
        await session.execute(
            select(PendingWebhookEvent.id)
            .where(*_due_predicates(now))
            .order_by(PendingWebhookEvent.created_at.asc())
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    if not candidate_ids:
        await session.rollback()
        return []
    await session.execute(
        update(PendingWebhookEvent)
        .where(PendingWebhookEvent.id.in_(list(candidate_ids)), *_due_predicates(now))
        .values(
            status="claimed",
            claimed_by=claim_token,
            claimed_until=now + timedelta(seconds=claim_ttl_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    rows = await session.execute(
        select(PendingWebhookEvent)
        .where(PendingWebhookEvent.claimed_by == claim_token, PendingWebhookEvent.processed.is_(False))
        .order_by(PendingWebhookEvent.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(rows.scalars().all())


async def finish_claimed_event(
    session: AsyncSession, *, event_id: str, claim_token: str, values: dict[str, Any]
) -> bool:
    # Only the current claim holder may record an outcome.
    result = await session.execute(
        update(PendingWebhookEvent)
        .where(PendingWebhookEvent.id == event_id, PendingWebhookEvent.claimed_by == claim_token)
        .values(claimed_by=None, claimed_until=None, **values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def get_event(session: AsyncSession, event_id: str) -> PendingWebhookEvent | None:
    result = await session.execute(
        select(PendingWebhookEvent)
        .where(PendingWebhookEvent.id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_events(
    session: AsyncSession,
    *,
    status: str | None = None,
    tenant_id: str | None = None,
    limit: int = 100,
) -> list[PendingWebhookEvent]:
    stmt = select(PendingWebhookEvent)
    if status is not None:
        stmt = stmt.where(PendingWebhookEvent.status == status)
    if tenant_id is not None:
        stmt = stmt.where(PendingWebhookEvent.tenant_id == tenant_id)
    stmt = stmt.order_by(PendingWebhookEvent.created_at.desc()).limit(max(1, limit))
    return list((await session.execute(stmt)).scalars().all())


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    rows = await session.execute(
        select(PendingWebhookEvent.status, func.count()).group_by(PendingWebhookEvent.status)
    )
    return {status: int(count) for status, count in rows.all()}
