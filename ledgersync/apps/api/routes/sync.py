from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.apps.api.deps import get_db, require_admin
from ledgersync.apps.api.openapi import ADMIN_ERROR_RESPONSES
from ledgersync.apps.api.response import SuccessEnvelope, success_response
from ledgersync.core.errors import NotFoundError
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.services.sync.engine import dependency_order, sync_connection
from ledgersync.services.sync.queue import SyncJobPayload, enqueue_sync_job, is_inline_mode


router = APIRouter(tags=["sync"], responses=ADMIN_ERROR_RESPONSES, dependencies=[Depends(require_admin)])


class SyncRequest(BaseModel):
    model_config = {"extra": "forbid"}

    connection_id: str = Field(min_length=1)
    entity_type: str | None = None


class SyncResponse(BaseModel):
    success: bool
    record_count: int
    summary: dict[str, Any]
    error: str | None = None
    correlation_id: str


@router.post("/sync", response_model=SuccessEnvelope[SyncResponse])
async def trigger_sync(request: Request, payload: SyncRequest, db: AsyncSession = Depends(get_db)) -> dict:
    entity_types = [payload.entity_type] if payload.entity_type else None
    # Reject unknown entity types before anything is queued.
    dependency_order(entity_types)
    if await connections_repo.get_connection(db, payload.connection_id) is None:
        raise NotFoundError(f"connection {payload.connection_id} not found")

    if is_inline_mode():
        outcome = await sync_connection(db, payload.connection_id, entity_types=entity_types)
        return success_response(request=request, data=SyncResponse(**outcome.as_response()))

    job = SyncJobPayload(connection_id=payload.connection_id, entity_types=entity_types)
    correlation_id = await enqueue_sync_job(job)
    data = SyncResponse(success=True, record_count=0, summary={"queued": True}, correlation_id=correlation_id)
    return success_response(request=request, data=data)
