from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from ledgersync.core.config import get_settings
from ledgersync.domain.models import utc_now
from ledgersync.persistence.db import SessionLocal
from ledgersync.services.sync.engine import SyncOutcome, sync_connection


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
WORKER_HEARTBEAT_KEY = "ledgersync:worker:heartbeat"
SYNC_JOB_NAME = "sync_connection_job"


def _queue_key(queue_name: str) -> str:
    return f"arq:queue:{queue_name}"


class SyncJobPayload(BaseModel):
    connection_id: str
    entity_types: list[str] | None = None
    correlation_id: str = Field(default_factory=lambda: uuid4().hex)


def is_inline_mode() -> bool:
    return get_settings().sync_execution_mode.lower() == "inline"


async def get_redis_pool():
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Pools are bound to the loop that created them.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    settings = get_settings()
    if is_inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        return int(await redis.llen(_queue_key(settings.sync_queue_name)))
    except Exception:  # noqa: BLE001 - health endpoint reports degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, (timestamp or utc_now()).isoformat())


async def get_worker_heartbeat() -> datetime | None:
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - health endpoint reports degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def process_sync_job(payload: SyncJobPayload) -> SyncOutcome:
    # Worker and inline mode share one execution path.
    async with SessionLocal() as session:
        return await sync_connection(
            session,
            payload.connection_id,
            entity_types=payload.entity_types,
            correlation_id=payload.correlation_id,
        )


async def enqueue_sync_job(payload: SyncJobPayload) -> str:
    """Hand a sync to the worker; the correlation id doubles as the arq job id."""
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        SYNC_JOB_NAME,
        payload.model_dump(),
        _job_id=payload.correlation_id,
        _queue_name=settings.sync_queue_name,
    )
    logger.info(
        "sync_job_enqueued connection_id=%s correlation_id=%s",
        payload.connection_id,
        payload.correlation_id,
    )
    # arq returns None when the job id already exists; the id still traces the original.
    return job.job_id if job else payload.correlation_id
