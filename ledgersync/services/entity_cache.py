from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Literal

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.domain.models import CachedEntity, UnresolvedReference, utc_now
from ledgersync.persistence.upsert import insert_or_ignore
from ledgersync.providers.accounting.base import SNAPSHOT_FIELDS, EntityRecord, EntityReference
from ledgersync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

UpsertOutcome = Literal["inserted", "updated", "unchanged", "stale"]


@dataclass(frozen=True)
class UpsertResult:
    outcome: UpsertOutcome
    unresolved: tuple[EntityReference, ...] = ()

    @property
    def applied(self) -> bool:
        return self.outcome in ("inserted", "updated")


def _key(tenant_id: str, entity_type: str, external_id: str) -> Any:
    return and_(
        CachedEntity.tenant_id == tenant_id,
        CachedEntity.entity_type == entity_type,
        CachedEntity.external_id == external_id,
    )


def _business_values(payload: dict[str, Any], snapshot: dict[str, Any], remote_updated_at: datetime) -> dict[str, Any]:
    values = {field: snapshot.get(field) for field in SNAPSHOT_FIELDS}
    values["raw_payload"] = payload
    values["remote_updated_at"] = remote_updated_at
    return values


async def upsert(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str,
    external_id: str,
    payload: dict[str, Any],
    remote_updated_at: datetime,
    snapshot: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> UpsertOutcome:
    """Apply one remote snapshot under the forward-only timestamp rule.

    Strictly newer input overwrites business fields. Equal input only
    touches ``local_updated_at``. Older input is ignored. Every write is a
    conditional statement and the forward-only update is re-run after a
    lost insert race, so webhook and sync writers commute no matter which
    lands first. The caller owns the commit.
    """
    if remote_updated_at.tzinfo is None:
        raise ValueError("remote_updated_at must be timezone-aware")
    now = now or utc_now()
    values = _business_values(payload, snapshot or {}, remote_updated_at)
    key = _key(tenant_id, entity_type, external_id)
    forward = (
        update(CachedEntity)
        .where(key, CachedEntity.remote_updated_at < remote_updated_at)
        .values(local_updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )

    if (await session.execute(forward)).rowcount:
        return "updated"

    inserted = await insert_or_ignore(
        session,
        CachedEntity,
        {
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "external_id": external_id,
            "local_updated_at": now,
            "created_at": now,
            **values,
        },
        index_elements=["tenant_id", "external_id", "entity_type"],
    )
    if inserted:
        return "inserted"

    # Another writer created the row after our first update; rows are never deleted, so it is visible now.
    if (await session.execute(forward)).rowcount:
        increment_counter("entity_cache_insert_races_total")
        return "updated"

    same = await session.execute(
        update(CachedEntity)
        .where(key, CachedEntity.remote_updated_at == remote_updated_at)
        .values(local_updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if same.rowcount:
        return "unchanged"
    increment_counter("entity_cache_stale_writes_total")
    logger.info(
        "entity_cache_stale_write tenant_id=%s entity_type=%s external_id=%s",
        tenant_id,
        entity_type,
        external_id,
    )
    return "stale"


async def _missing_references(
    session: AsyncSession, *, tenant_id: str, references: tuple[EntityReference, ...]
) -> tuple[EntityReference, ...]:
    missing = []
    for ref in references:
        exists = await session.execute(
            select(CachedEntity.id).where(_key(tenant_id, ref.entity_type, ref.external_id)).limit(1)
        )
        if exists.scalar_one_or_none() is None:
            missing.append(ref)
    return tuple(missing)


async def apply_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    record: EntityRecord,
    now: datetime | None = None,
) -> UpsertResult:
    """Upsert a provider record and track soft references it points at.

    A record whose referenced entity has not synced yet is stored anyway;
    the dangling edge is logged to ``unresolved_references`` and cleared
    once the target arrives.
    """
    now = now or utc_now()
    outcome = await upsert(
        session,
        tenant_id=tenant_id,
        entity_type=record.entity_type,
        external_id=record.external_id,
        payload=record.payload,
        remote_updated_at=record.remote_updated_at,
        snapshot=record.snapshot,
        now=now,
    )
    unresolved: tuple[EntityReference, ...] = ()
    if outcome in ("inserted", "updated"):
        await resolve_references_to(
            session, tenant_id=tenant_id, entity_type=record.entity_type, external_id=record.external_id, now=now
        )
        unresolved = await _missing_references(session, tenant_id=tenant_id, references=record.references)
        for ref in unresolved:
            await insert_or_ignore(
                session,
                UnresolvedReference,
                {
                    "tenant_id": tenant_id,
                    "entity_type": record.entity_type,
                    "external_id": record.external_id,
                    "referenced_type": ref.entity_type,
                    "referenced_external_id": ref.external_id,
                    "created_at": now,
                },
                index_elements=[
                    "tenant_id",
                    "entity_type",
                    "external_id",
                    "referenced_type",
                    "referenced_external_id",
                ],
            )
            logger.info(
                "entity_reference_unresolved tenant_id=%s entity_type=%s external_id=%s ref_type=%s ref_id=%s",
                tenant_id,
                record.entity_type,
                record.external_id,
                ref.entity_type,
                ref.external_id,
            )
    return UpsertResult(outcome=outcome, unresolved=unresolved)


async def resolve_references_to(
    session: AsyncSession, *, tenant_id: str, entity_type: str, external_id: str, now: datetime
) -> int:
    result = await session.execute(
        update(UnresolvedReference)
        .where(
            UnresolvedReference.tenant_id == tenant_id,
            UnresolvedReference.referenced_type == entity_type,
            UnresolvedReference.referenced_external_id == external_id,
            UnresolvedReference.resolved_at.is_(None),
        )
        .values(resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def get_entity(
    session: AsyncSession, *, tenant_id: str, entity_type: str, external_id: str
) -> CachedEntity | None:
    result = await session.execute(
        select(CachedEntity)
        .where(_key(tenant_id, entity_type, external_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_unresolved_references(session: AsyncSession, *, tenant_id: str) -> list[UnresolvedReference]:
    result = await session.execute(
        select(UnresolvedReference)
        .where(UnresolvedReference.tenant_id == tenant_id, UnresolvedReference.resolved_at.is_(None))
        .order_by(UnresolvedReference.created_at.asc())
    )
    return list(result.scalars().all())
