from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.domain.models import SyncWatermark, utc_now
from ledgersync.persistence.upsert import insert_or_update


async def get_watermark(session: AsyncSession, *, tenant_id: str, entity_type: str) -> datetime | None:
    result = await session.execute(
        select(SyncWatermark.watermark).where(
            SyncWatermark.tenant_id == tenant_id,
            SyncWatermark.entity_type == entity_type,
        )
    )
    return result.scalar_one_or_none()


async def get_watermarks(session: AsyncSession, *, tenant_id: str) -> dict[str, datetime]:
    rows = await session.execute(
        select(SyncWatermark.entity_type, SyncWatermark.watermark).where(SyncWatermark.tenant_id == tenant_id)
    )
    return {entity_type: watermark for entity_type, watermark in rows.all()}


async def set_watermark(session: AsyncSession, *, tenant_id: str, entity_type: str, watermark: datetime) -> None:
    await insert_or_update(
        session,
        SyncWatermark,
        {
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "watermark": watermark,
            "updated_at": utc_now(),
        },
        index_elements=["tenant_id", "entity_type"],
        update_columns=["watermark", "updated_at"],
    )
