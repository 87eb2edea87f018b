from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.apps.api.deps import get_db, require_admin
from ledgersync.apps.api.openapi import ADMIN_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from ledgersync.apps.api.response import SuccessEnvelope, success_response
from ledgersync.persistence.repos import webhook_events as events_repo
from ledgersync.services.sync.queue import get_queue_depth, get_worker_heartbeat
from ledgersync.services.telemetry import (
    counters_snapshot,
    external_call_summary,
    gauges_snapshot,
    request_error_rate,
)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class OpsStatusResponse(BaseModel):
    webhook_events: dict[str, int]
    sync_queue_depth: int | None
    worker_heartbeat_at: str | None
    request_error_rate: float | None
    external_calls: dict[str, dict[str, float | int]]
    counters: dict[str, int]
    gauges: dict[str, float]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get(
    "/ops/status",
    response_model=SuccessEnvelope[OpsStatusResponse],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
async def ops_status(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    heartbeat = await get_worker_heartbeat()
    payload = OpsStatusResponse(
        webhook_events=await events_repo.count_by_status(db),
        sync_queue_depth=await get_queue_depth(),
        worker_heartbeat_at=heartbeat.isoformat() if heartbeat else None,
        request_error_rate=request_error_rate(300),
        external_calls=external_call_summary(300),
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
    )
    return success_response(request=request, data=payload)
