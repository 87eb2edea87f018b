from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable

from arq.connections import RedisSettings

from ledgersync.core.config import get_settings
from ledgersync.core.logging import configure_logging
from ledgersync.persistence.db import SessionLocal
from ledgersync.services.connections.maintenance import cleanup_connections, refresh_expiring_connections
from ledgersync.services.sync.engine import run_scheduled_sync
from ledgersync.services.sync.queue import SyncJobPayload, process_sync_job, set_worker_heartbeat
from ledgersync.services.webhooks.processor import process_pending_events


logger = logging.getLogger(__name__)


async def sync_connection_job(ctx, payload: dict) -> dict[str, Any]:
    job_payload = SyncJobPayload.model_validate(payload)
    outcome = await process_sync_job(job_payload)
    return outcome.as_response()


async def _process_webhooks() -> None:
    worker_id = f"{socket.gethostname()}:webhooks"
    # Drain due events batch by batch before sleeping.
    while True:
        summary = await process_pending_events(SessionLocal, worker_id=worker_id)
        if summary.claimed < get_settings().webhook_batch_size:
            return


async def _scheduled_sync() -> None:
    await run_scheduled_sync(SessionLocal)


async def _token_sweep() -> None:
    await refresh_expiring_connections(SessionLocal)


async def _cleanup() -> None:
    await cleanup_connections(SessionLocal)


async def _heartbeat() -> None:
    await set_worker_heartbeat()


async def _scheduler_loop(name: str, interval_s: int, tick: Callable[[], Awaitable[None]]) -> None:
    interval_s = max(1, int(interval_s))
    while True:
        try:
            await tick()
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in worker logs
            logger.exception("worker_loop_failed loop=%s", name)
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    loops = {
        "webhooks": (settings.webhook_worker_poll_interval_s, _process_webhooks),
        "scheduled_sync": (settings.sync_schedule_interval_s, _scheduled_sync),
        "token_sweep": (settings.token_sweep_interval_s, _token_sweep),
        "cleanup": (settings.cleanup_interval_s, _cleanup),
        "heartbeat": (settings.worker_heartbeat_interval_s, _heartbeat),
    }
    ctx["scheduler_tasks"] = [
        asyncio.create_task(_scheduler_loop(name, interval_s, tick)) for name, (interval_s, tick) in loops.items()
    ]
    logger.info("worker_started loops=%s", ",".join(loops))


async def _shutdown(ctx) -> None:
    for task in ctx.get("scheduler_tasks", []):
        task.cancel()


class WorkerSettings:
    # Class attributes are what the arq CLI reads.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = max(1, int(settings.sync_max_job_tries))
    job_timeout = settings.sync_deadline_seconds + 60
    functions = [sync_connection_job]
    on_startup = _startup
    on_shutdown = _shutdown
