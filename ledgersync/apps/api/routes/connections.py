from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.apps.api.deps import get_db, require_admin
from ledgersync.apps.api.openapi import ADMIN_ERROR_RESPONSES
from ledgersync.apps.api.response import SuccessEnvelope, success_response
from ledgersync.core.errors import NotFoundError
from ledgersync.domain.models import Connection, utc_now
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.providers.accounting.base import TokenBundle
from ledgersync.providers.accounting.factory import get_accounting_provider
from ledgersync.services.connections.health import check_connection_health
from ledgersync.services.connections.manager import (
    activate_connection,
    create_connection,
    disconnect,
    list_connections,
    set_primary_connection,
)


router = APIRouter(
    prefix="/connections",
    tags=["connections"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)

ProviderName = Literal["xero", "quickbooks", "fake"]


class ConnectionResponse(BaseModel):
    # Token material is never part of the response.
    id: str
    user_id: str
    provider: str
    tenant_id: str
    tenant_name: str | None
    status: str
    scopes: list[str]
    expires_at: str
    last_api_call_at: str | None
    last_error: str | None
    is_active: bool
    is_primary: bool
    created_at: str


class CreateConnectionRequest(BaseModel):
    model_config = {"extra": "forbid"}

    user_id: str = Field(min_length=1)
    provider: ProviderName
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str = Field(min_length=1, repr=False)
    expires_in: int | None = Field(default=None, ge=0)
    scopes: list[str] = Field(default_factory=list)
    tenant_id: str = Field(min_length=1)
    tenant_name: str | None = None


class ExchangeCodeRequest(BaseModel):
    model_config = {"extra": "forbid"}

    user_id: str = Field(min_length=1)
    provider: ProviderName
    code: str = Field(min_length=1, repr=False)
    redirect_uri: str = Field(min_length=1)
    tenant_id: str | None = None


class UserScopedRequest(BaseModel):
    user_id: str = Field(min_length=1)


class ConnectionHealthResponse(BaseModel):
    connection_id: str
    status: str
    checked_at: str
    issues: list[str]
    requires_reconnect: bool


def _to_response(row: Connection) -> ConnectionResponse:
    return ConnectionResponse(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        tenant_id=row.tenant_id,
        tenant_name=row.tenant_name,
        status=row.status,
        scopes=list(row.scopes or []),
        expires_at=row.expires_at.isoformat(),
        last_api_call_at=row.last_api_call_at.isoformat() if row.last_api_call_at else None,
        last_error=row.last_error,
        is_active=row.is_active,
        is_primary=row.is_primary,
        created_at=row.created_at.isoformat(),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[ConnectionResponse])
async def create(request: Request, payload: CreateConnectionRequest, db: AsyncSession = Depends(get_db)) -> dict:
    bundle = TokenBundle(
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        expires_in=payload.expires_in,
        scopes=tuple(payload.scopes),
        tenant_id=payload.tenant_id,
        tenant_name=payload.tenant_name,
    )
    row = await create_connection(
        db,
        user_id=payload.user_id,
        provider=payload.provider,
        bundle=bundle,
        scopes=payload.scopes,
        tenant_id=payload.tenant_id,
        tenant_name=payload.tenant_name,
    )
    return success_response(request=request, data=_to_response(row))


@router.post("/exchange", status_code=201, response_model=SuccessEnvelope[list[ConnectionResponse]])
async def exchange(request: Request, payload: ExchangeCodeRequest, db: AsyncSession = Depends(get_db)) -> dict:
    """Trade an authorization code for tokens and store one connection per granted tenant."""
    provider = get_accounting_provider(payload.provider)
    bundles = await provider.exchange_code(
        payload.code, redirect_uri=payload.redirect_uri, tenant_hint=payload.tenant_id
    )
    if payload.tenant_id is not None:
        bundles = [bundle for bundle in bundles if bundle.tenant_id == payload.tenant_id]
    if not bundles:
        raise NotFoundError("authorization granted no matching tenant")
    rows = [
        await create_connection(db, user_id=payload.user_id, provider=payload.provider, bundle=bundle)
        for bundle in bundles
    ]
    return success_response(request=request, data=[_to_response(row) for row in rows])


@router.get("", response_model=SuccessEnvelope[list[ConnectionResponse]])
async def list_for_user(
    request: Request,
    user_id: str = Query(min_length=1),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_connections(db, user_id=user_id)
    return success_response(request=request, data=[_to_response(row) for row in rows])


@router.post("/{connection_id}/activate", response_model=SuccessEnvelope[ConnectionResponse])
async def activate(
    connection_id: str, request: Request, payload: UserScopedRequest, db: AsyncSession = Depends(get_db)
) -> dict:
    row = await activate_connection(db, connection_id=connection_id, user_id=payload.user_id)
    return success_response(request=request, data=_to_response(row))


@router.post("/{connection_id}/primary", response_model=SuccessEnvelope[ConnectionResponse])
async def make_primary(
    connection_id: str, request: Request, payload: UserScopedRequest, db: AsyncSession = Depends(get_db)
) -> dict:
    row = await set_primary_connection(db, connection_id=connection_id, user_id=payload.user_id)
    return success_response(request=request, data=_to_response(row))


@router.delete("/{connection_id}", response_model=SuccessEnvelope[ConnectionResponse])
async def remove(
    connection_id: str,
    request: Request,
    user_id: str = Query(min_length=1),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await disconnect(db, connection_id=connection_id, user_id=user_id)
    return success_response(request=request, data=_to_response(row))


@router.get("/{connection_id}/health", response_model=SuccessEnvelope[ConnectionHealthResponse])
async def health(connection_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    row = await connections_repo.get_connection(db, connection_id)
    if row is None:
        raise NotFoundError(f"connection {connection_id} not found")
    report = check_connection_health(row, now=utc_now())
    payload = ConnectionHealthResponse(
        connection_id=report.connection_id,
        status=report.status,
        checked_at=report.checked_at.isoformat(),
        issues=list(report.issues),
        requires_reconnect=report.requires_reconnect,
    )
    return success_response(request=request, data=payload)
