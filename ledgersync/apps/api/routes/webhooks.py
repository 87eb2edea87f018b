from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.apps.api.deps import get_db
from ledgersync.services.webhooks.dialects import get_webhook_dialect
from ledgersync.services.webhooks.ingress import ingest

router = APIRouter(tags=["webhooks"])


@router.post(
    "/webhooks/{provider}",
    status_code=200,
    response_class=Response,
    responses={
        200: {"description": "Batch persisted (duplicates included)"},
        400: {"description": "Signed body is not a valid notification batch"},
        401: {"description": "Missing or invalid signature"},
        500: {"description": "Webhook key not configured"},
    },
)
async def receive_webhook(provider: str, request: Request, db: AsyncSession = Depends(get_db)) -> Response:
    """Acknowledge a provider notification batch.

    Providers only look at the status code and expect an empty body, so no
    envelope is returned here. Processing outcomes never reach this response.
    """
    dialect = get_webhook_dialect(provider)
    raw_body = await request.body()
    ack = await ingest(
        db,
        provider=dialect.provider,
        raw_body=raw_body,
        signature_header=request.headers.get(dialect.signature_header),
    )
    return Response(status_code=ack.status_code)
