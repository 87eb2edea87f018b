from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.apps.api.deps import get_db, get_session_factory, require_admin
from ledgersync.apps.api.openapi import ADMIN_ERROR_RESPONSES
from ledgersync.apps.api.response import SuccessEnvelope, success_response
from ledgersync.domain.models import PendingWebhookEvent
from ledgersync.persistence.repos import webhook_events as events_repo
from ledgersync.services.webhooks.processor import process_pending_events, replay_event


router = APIRouter(
    prefix="/webhook-events",
    tags=["webhook-events"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)

EventStatus = Literal["pending", "succeeded", "skipped", "dead_lettered"]


class WebhookEventResponse(BaseModel):
    id: str
    provider: str
    tenant_id: str
    category: str
    event_type: str
    resource_id: str
    event_date: str | None
    status: str
    processed: bool
    processing_error: str | None
    retry_count: int
    next_attempt_at: str | None
    created_at: str
    processed_at: str | None


class ProcessBatchResponse(BaseModel):
    claimed: int
    succeeded: int
    retried: int
    skipped: int
    dead_lettered: int


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(event: PendingWebhookEvent) -> WebhookEventResponse:
    return WebhookEventResponse(
        id=event.id,
        provider=event.provider,
        tenant_id=event.tenant_id,
        category=event.category,
        event_type=event.event_type,
        resource_id=event.resource_id,
        event_date=_iso(event.event_date),
        status=event.status,
        processed=event.processed,
        processing_error=event.processing_error,
        retry_count=event.retry_count,
        next_attempt_at=_iso(event.next_attempt_at),
        created_at=event.created_at.isoformat(),
        processed_at=_iso(event.processed_at),
    )


@router.get("", response_model=SuccessEnvelope[list[WebhookEventResponse]])
async def list_webhook_events(
    request: Request,
    status: EventStatus | None = None,
    tenant_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await events_repo.list_events(db, status=status, tenant_id=tenant_id, limit=limit)
    return success_response(request=request, data=[_to_response(event) for event in events])


@router.post("/{event_id}/replay", response_model=SuccessEnvelope[WebhookEventResponse])
async def replay(event_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    event = await replay_event(db, event_id=event_id)
    return success_response(request=request, data=_to_response(event))


@router.post("/process", response_model=SuccessEnvelope[ProcessBatchResponse])
async def process_batch(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=1000),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Run one processor pass in the request, for operators and local development."""
    summary = await process_pending_events(session_factory, limit=limit, worker_id="api")
    payload = ProcessBatchResponse(
        claimed=summary.claimed,
        succeeded=summary.succeeded,
        retried=summary.retried,
        skipped=summary.skipped,
        dead_lettered=summary.dead_lettered,
    )
    return success_response(request=request, data=payload)
