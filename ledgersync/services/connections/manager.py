from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import get_settings
from ledgersync.core.errors import (
    AuthenticationError,
    LedgerSyncError,
    NotFoundError,
    TransientUpstreamError,
    ValidationError,
)
from ledgersync.domain.models import Connection, utc_now
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.providers.accounting.base import AccountingProvider, ProviderCredentials, TokenBundle, token_expiry
from ledgersync.providers.accounting.factory import SUPPORTED_PROVIDERS, get_accounting_provider
from ledgersync.services.audit import record_event
from ledgersync.services.crypto.vault import CredentialVault, get_credential_vault
from ledgersync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class DecryptedConnection:
    """Read-only view handed to callers; plaintext tokens never go back to storage."""

    id: str
    user_id: str
    provider: str
    tenant_id: str
    tenant_name: str | None
    status: str
    scopes: tuple[str, ...]
    expires_at: datetime
    is_active: bool
    is_primary: bool
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)

    def credentials(self) -> ProviderCredentials:
        return ProviderCredentials(tenant_id=self.tenant_id, access_token=self.access_token)


def _decrypt(row: Connection, vault: CredentialVault) -> DecryptedConnection:
    return DecryptedConnection(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        tenant_id=row.tenant_id,
        tenant_name=row.tenant_name,
        status=row.status,
        scopes=tuple(row.scopes or ()),
        expires_at=row.expires_at,
        is_active=row.is_active,
        is_primary=row.is_primary,
        access_token=vault.decrypt(row.access_token_encrypted),
        refresh_token=vault.decrypt(row.refresh_token_encrypted),
    )


async def _get_owned(session: AsyncSession, *, connection_id: str, user_id: str | None) -> Connection:
    row = await connections_repo.get_connection(session, connection_id, reload=True)
    # Foreign connections look exactly like missing ones.
    if row is None or (user_id is not None and row.user_id != user_id):
        raise NotFoundError(f"connection {connection_id} not found")
    return row


async def create_connection(
    session: AsyncSession,
    *,
    user_id: str,
    provider: str,
    bundle: TokenBundle,
    scopes: list[str] | None = None,
    tenant_id: str | None = None,
    tenant_name: str | None = None,
    now: datetime | None = None,
) -> Connection:
    """Persist a freshly exchanged credential as the user's active connection.

    Re-connecting a tenant the user already linked updates that row in place.
    """
    settings = get_settings()
    if provider not in SUPPORTED_PROVIDERS:
        raise ValidationError(f"unsupported provider {provider}")
    tenant_id = tenant_id or bundle.tenant_id
    if not tenant_id:
        raise ValidationError("tenant_id is required to create a connection")
    now = now or utc_now()
    vault = get_credential_vault()
    access_encrypted = vault.encrypt(bundle.access_token)
    refresh_encrypted = vault.encrypt(bundle.refresh_token)
    expires_at = token_expiry(bundle, now=now, default_lifetime_seconds=settings.default_token_lifetime_seconds)
    resolved_scopes = list(scopes if scopes is not None else bundle.scopes)

    existing = await connections_repo.find_connection(
        session, user_id=user_id, provider=provider, tenant_id=tenant_id
    )
    if not settings.multi_tenant_mode:
        await connections_repo.deactivate_siblings(
            session,
            user_id=user_id,
            provider=provider,
            keep_id=existing.id if existing is not None else None,
            now=now,
        )
        make_primary = True
    else:
        siblings = await connections_repo.list_user_connections(session, user_id=user_id)
        make_primary = not any(row.is_primary and row.is_active for row in siblings if row is not existing)
    if make_primary:
        await connections_repo.clear_primary(
            session, user_id=user_id, now=now, keep_id=existing.id if existing is not None else None
        )

    if existing is None:
        row = Connection(user_id=user_id, provider=provider, tenant_id=tenant_id, created_at=now)
        session.add(row)
        event_type = "connection.created"
    else:
        row = existing
        event_type = "connection.reconnected"
    row.tenant_name = tenant_name or bundle.tenant_name or row.tenant_name
    row.access_token_encrypted = access_encrypted
    row.refresh_token_encrypted = refresh_encrypted
    row.scopes = resolved_scopes
    row.expires_at = expires_at
    row.refresh_token_issued_at = now
    row.status = "active"
    row.last_error = None
    row.is_active = True
    row.is_primary = make_primary or row.is_primary
    row.updated_at = now
    await session.flush()
    await record_event(
        session=session,
        event_type=event_type,
        outcome="success",
        user_id=user_id,
        tenant_id=tenant_id,
        resource_type="connection",
        resource_id=row.id,
        metadata={"provider": provider, "scopes": resolved_scopes},
    )
    await session.commit()
    logger.info(
        "connection_saved connection_id=%s user_id=%s provider=%s tenant_id=%s event=%s",
        row.id,
        user_id,
        provider,
        tenant_id,
        event_type,
    )
    return row


async def get_decrypted_connection(
    session: AsyncSession, *, user_id: str, tenant_id: str | None = None
) -> DecryptedConnection:
    row = await connections_repo.resolve_user_connection(session, user_id=user_id, tenant_id=tenant_id)
    if row is None:
        raise NotFoundError("no active connection for user")
    return _decrypt(row, get_credential_vault())


async def get_decrypted_connection_by_id(session: AsyncSession, connection_id: str) -> DecryptedConnection:
    row = await _get_owned(session, connection_id=connection_id, user_id=None)
    return _decrypt(row, get_credential_vault())


async def list_connections(session: AsyncSession, *, user_id: str) -> list[Connection]:
    return await connections_repo.list_user_connections(session, user_id=user_id)


def _needs_refresh(row: Connection, now: datetime, skew_seconds: int) -> bool:
    return row.expires_at <= now + timedelta(seconds=skew_seconds)


async def _load_usable(session: AsyncSession, connection_id: str) -> Connection:
    row = await connections_repo.get_connection(session, connection_id, reload=True)
    if row is None:
        raise NotFoundError(f"connection {connection_id} not found")
    if row.status == "error" or not row.is_active:
        raise AuthenticationError(f"reconnect required for connection {connection_id}")
    return row


async def ensure_fresh_token(
    session: AsyncSession,
    connection: DecryptedConnection | str,
    *,
    provider: AccountingProvider | None = None,
    clock: Clock = utc_now,
    skew_seconds: int | None = None,
) -> DecryptedConnection:
    """Return the connection with an access token valid beyond the skew window.

    Refresh is serialized through a lease on the connection row. The caller
    that wins the lease performs the refresh grant; everyone else polls the
    row until the new expiry shows up, the lease frees up, or the wait
    budget runs out. A stale token is never returned.
    """
    settings = get_settings()
    skew = settings.token_refresh_skew_seconds if skew_seconds is None else skew_seconds
    connection_id = connection if isinstance(connection, str) else connection.id
    vault = get_credential_vault()

    row = await _load_usable(session, connection_id)
    if not _needs_refresh(row, clock(), skew):
        return _decrypt(row, vault)

    owner = uuid4().hex
    wait_deadline = time.monotonic() + settings.refresh_lease_wait_seconds
    while not await connections_repo.claim_refresh_lease(
        session,
        connection_id=connection_id,
        owner=owner,
        now=clock(),
        ttl_seconds=settings.refresh_lease_ttl_seconds,
    ):
        if time.monotonic() >= wait_deadline:
            increment_counter("token_refresh_lease_timeouts_total")
            raise TransientUpstreamError(
                f"token refresh for connection {connection_id} is still in progress",
                retry_after=float(settings.refresh_lease_ttl_seconds),
            )
        await asyncio.sleep(settings.refresh_lease_poll_seconds)
        row = await _load_usable(session, connection_id)
        if not _needs_refresh(row, clock(), skew):
            increment_counter("token_refresh_coalesced_total")
            return _decrypt(row, vault)

    try:
        # The previous holder may have finished between our last read and the claim.
        row = await _load_usable(session, connection_id)
        if not _needs_refresh(row, clock(), skew):
            return _decrypt(row, vault)
        renewal = asyncio.create_task(
            _keep_lease(session, connection_id=connection_id, owner=owner, clock=clock)
        )
        try:
            return await _refresh_locked(
                session,
                row,
                owner=owner,
                provider=provider or get_accounting_provider(row.provider),
                vault=vault,
                clock=clock,
            )
        finally:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal
    finally:
        await connections_repo.release_refresh_lease(session, connection_id=connection_id, owner=owner)
        await session.commit()


async def _keep_lease(session: AsyncSession, *, connection_id: str, owner: str, clock: Clock) -> None:
    # Renews from its own session until cancelled; waiters only claim a lease whose holder is gone.
    bind = session.bind
    if bind is None:
        return
    ttl = get_settings().refresh_lease_ttl_seconds
    async with AsyncSession(bind, expire_on_commit=False) as renew_session:
        while True:
            await asyncio.sleep(ttl / 3.0)
            renewed = await connections_repo.renew_refresh_lease(
                renew_session, connection_id=connection_id, owner=owner, now=clock(), ttl_seconds=ttl
            )
            if not renewed:
                logger.warning("refresh_lease_lost connection_id=%s owner=%s", connection_id, owner)
                return


async def _refresh_locked(
    session: AsyncSession,
    row: Connection,
    *,
    owner: str,
    provider: AccountingProvider,
    vault: CredentialVault,
    clock: Clock,
) -> DecryptedConnection:
    settings = get_settings()
    refresh_token = vault.decrypt(row.refresh_token_encrypted)
    try:
        bundle = await asyncio.wait_for(
            provider.refresh_token(refresh_token), timeout=settings.refresh_grant_timeout_seconds
        )
    except TimeoutError as exc:
        row.last_error = "refresh grant timed out"
        await session.commit()
        increment_counter("token_refresh_transient_total")
        logger.warning("token_refresh_timeout connection_id=%s", row.id)
        raise TransientUpstreamError(f"token refresh for connection {row.id} timed out") from exc
    except AuthenticationError as exc:
        # Rejected grant: the refresh token is dead and only a reconnect helps.
        row.status = "error"
        row.last_error = str(exc)
        row.updated_at = clock()
        await record_event(
            session=session,
            event_type="connection.refresh",
            outcome="failure",
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            resource_type="connection",
            resource_id=row.id,
            error_code="REFRESH_REJECTED",
        )
        await session.commit()
        increment_counter("token_refresh_failed_total")
        logger.warning("token_refresh_rejected connection_id=%s provider=%s", row.id, row.provider)
        raise AuthenticationError(f"reconnect required for connection {row.id}") from exc
    except TransientUpstreamError as exc:
        row.last_error = str(exc)
        await session.commit()
        increment_counter("token_refresh_transient_total")
        logger.warning("token_refresh_transient connection_id=%s error=%s", row.id, exc)
        raise

    now = clock()
    values: dict[str, object] = {
        "access_token_encrypted": vault.encrypt(bundle.access_token),
        "refresh_token_encrypted": vault.encrypt(bundle.refresh_token),
        "expires_at": token_expiry(bundle, now=now, default_lifetime_seconds=settings.default_token_lifetime_seconds),
        "refresh_token_issued_at": now,
        "status": "active",
        "last_error": None,
        "updated_at": now,
    }
    if bundle.scopes:
        values["scopes"] = list(bundle.scopes)
    stored = await connections_repo.store_refreshed_tokens(
        session, connection_id=row.id, owner=owner, values=values
    )
    if not stored:
        # Another caller took over the lease; its write is authoritative and ours is discarded.
        await session.rollback()
        increment_counter("token_refresh_lease_lost_total")
        logger.error("token_refresh_lease_lost connection_id=%s", row.id)
        current = await _load_usable(session, row.id)
        if _needs_refresh(current, clock(), settings.token_refresh_skew_seconds):
            raise TransientUpstreamError(
                f"token refresh for connection {row.id} lost its lease",
                retry_after=float(settings.refresh_lease_ttl_seconds),
            )
        return _decrypt(current, vault)
    await record_event(
        session=session,
        event_type="connection.refresh",
        outcome="success",
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        resource_type="connection",
        resource_id=row.id,
    )
    await session.commit()
    row = await _load_usable(session, row.id)
    increment_counter("token_refresh_success_total")
    logger.info("token_refreshed connection_id=%s expires_at=%s", row.id, row.expires_at.isoformat())
    return _decrypt(row, vault)


async def activate_connection(
    session: AsyncSession, *, connection_id: str, user_id: str, now: datetime | None = None
) -> Connection:
    now = now or utc_now()
    row = await _get_owned(session, connection_id=connection_id, user_id=user_id)
    if row.status == "error":
        raise AuthenticationError(f"reconnect required for connection {connection_id}")
    if not get_settings().multi_tenant_mode:
        # Sibling deactivation and target activation commit together.
        await connections_repo.deactivate_siblings(
            session, user_id=user_id, provider=row.provider, keep_id=row.id, now=now
        )
        await connections_repo.clear_primary(session, user_id=user_id, now=now, keep_id=row.id)
        row.is_primary = True
    row.is_active = True
    row.status = "active"
    row.updated_at = now
    await record_event(
        session=session,
        event_type="connection.activated",
        outcome="success",
        user_id=user_id,
        tenant_id=row.tenant_id,
        resource_type="connection",
        resource_id=row.id,
    )
    await session.commit()
    return row


async def set_primary_connection(
    session: AsyncSession, *, connection_id: str, user_id: str, now: datetime | None = None
) -> Connection:
    now = now or utc_now()
    row = await _get_owned(session, connection_id=connection_id, user_id=user_id)
    if not row.is_active:
        raise ValidationError("only an active connection can be primary")
    await connections_repo.clear_primary(session, user_id=user_id, now=now, keep_id=row.id)
    row.is_primary = True
    row.updated_at = now
    await session.commit()
    return row


async def disconnect(
    session: AsyncSession,
    *,
    connection_id: str,
    user_id: str | None = None,
    provider: AccountingProvider | None = None,
    now: datetime | None = None,
) -> Connection:
    """Revoke upstream if possible, then deactivate locally no matter what."""
    now = now or utc_now()
    row = await _get_owned(session, connection_id=connection_id, user_id=user_id)
    revoked = False
    try:
        refresh_token = get_credential_vault().decrypt(row.refresh_token_encrypted)
        await (provider or get_accounting_provider(row.provider)).revoke_token(refresh_token)
        revoked = True
    except LedgerSyncError as exc:
        logger.warning(
            "connection_revoke_failed connection_id=%s provider=%s error_type=%s",
            row.id,
            row.provider,
            type(exc).__name__,
        )
    row.is_active = False
    row.is_primary = False
    row.status = "inactive"
    row.refresh_lease_owner = None
    row.refresh_lease_expires_at = None
    row.updated_at = now
    await record_event(
        session=session,
        event_type="connection.disconnected",
        outcome="success",
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        resource_type="connection",
        resource_id=row.id,
        metadata={"remote_revoked": revoked},
    )
    await session.commit()
    return row


async def record_api_call(session: AsyncSession, *, connection_id: str, now: datetime | None = None) -> None:
    row = await connections_repo.get_connection(session, connection_id)
    if row is None:
        return
    row.last_api_call_at = now or utc_now()
    await session.commit()
