from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from ledgersync.core.config import get_settings
from ledgersync.core.errors import AuthenticationError, NotFoundError, TransientUpstreamError, ValidationError
from ledgersync.domain.models import AuditEvent, utc_now
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.services.connections.manager import (
    activate_connection,
    create_connection,
    disconnect,
    ensure_fresh_token,
    get_decrypted_connection,
    list_connections,
    set_primary_connection,
)
from ledgersync.tests.utils.factories import T0, StepClock, bundle, make_connection


async def _reload(session_factory, connection_id: str):
    async with session_factory() as session:
        return await connections_repo.get_connection(session, connection_id)


async def test_tokens_are_stored_encrypted(db_session) -> None:
    row = await make_connection(db_session)
    assert row.access_token_encrypted.startswith("v1:")
    assert "access-initial" not in row.access_token_encrypted
    assert "refresh-initial" not in row.refresh_token_encrypted
    assert row.expires_at == T0 + timedelta(seconds=1800)

    decrypted = await get_decrypted_connection(db_session, user_id="u1")
    assert decrypted.access_token == "access-initial"
    assert decrypted.refresh_token == "refresh-initial"
    assert "access-initial" not in repr(decrypted)


async def test_single_active_connection_per_provider(session_factory, db_session) -> None:
    first = await make_connection(db_session, tenant_id="t1")
    second = await make_connection(db_session, tenant_id="t2")
    first = await _reload(session_factory, first.id)
    assert (first.is_active, first.is_primary, first.status) == (False, False, "inactive")
    assert (second.is_active, second.is_primary) == (True, True)


async def test_reconnecting_same_tenant_updates_in_place(db_session) -> None:
    first = await make_connection(db_session, tenant_id="t1")
    again = await create_connection(
        db_session, user_id="u1", provider="xero", bundle=bundle(access_token="access-2"), tenant_id="t1", now=T0
    )
    assert again.id == first.id
    assert len(await list_connections(db_session, user_id="u1")) == 1
    audit = (await db_session.execute(select(AuditEvent.event_type).order_by(AuditEvent.id))).scalars().all()
    assert audit == ["connection.created", "connection.reconnected"]


async def test_multi_tenant_mode_keeps_every_tenant_active(session_factory, db_session, monkeypatch) -> None:
    monkeypatch.setenv("MULTI_TENANT_MODE", "true")
    get_settings.cache_clear()
    first = await make_connection(db_session, tenant_id="t1")
    second = await make_connection(db_session, tenant_id="t2")
    first = await _reload(session_factory, first.id)
    assert first.is_active and second.is_active
    assert first.is_primary is True
    assert second.is_primary is False

    await set_primary_connection(db_session, connection_id=second.id, user_id="u1")
    first = await _reload(session_factory, first.id)
    second = await _reload(session_factory, second.id)
    assert (first.is_primary, second.is_primary) == (False, True)


async def test_create_rejects_unknown_provider_and_missing_tenant(db_session) -> None:
    with pytest.raises(ValidationError):
        await create_connection(db_session, user_id="u1", provider="sage", bundle=bundle(), tenant_id="t1")
    with pytest.raises(ValidationError):
        await create_connection(db_session, user_id="u1", provider="xero", bundle=bundle())


async def test_fresh_token_is_returned_without_refresh(db_session, fake_provider) -> None:
    row = await make_connection(db_session)
    connection = await ensure_fresh_token(db_session, row.id, clock=StepClock())
    assert connection.access_token == "access-initial"
    assert fake_provider.refresh_calls == []


async def test_expiring_token_is_refreshed_and_rotated(session_factory, db_session, fake_provider) -> None:
    row = await make_connection(db_session, expires_in=30)
    clock = StepClock()
    connection = await ensure_fresh_token(db_session, row.id, clock=clock)
    assert connection.access_token == "access-1"
    assert connection.refresh_token == "refresh-1"
    assert fake_provider.refresh_calls == ["refresh-initial"]
    stored = await _reload(session_factory, row.id)
    assert stored.expires_at == T0 + timedelta(seconds=1800)
    assert stored.refresh_lease_owner is None


async def test_rejected_refresh_requires_reconnect(session_factory, db_session, fake_provider) -> None:
    row = await make_connection(db_session, expires_in=30)
    fake_provider.refresh_failures.append(AuthenticationError("invalid_grant"))
    with pytest.raises(AuthenticationError):
        await ensure_fresh_token(db_session, row.id, clock=StepClock())
    stored = await _reload(session_factory, row.id)
    assert stored.status == "error"
    assert "invalid_grant" in stored.last_error

    # Error connections never call the provider again.
    with pytest.raises(AuthenticationError):
        await ensure_fresh_token(db_session, row.id, clock=StepClock())
    assert fake_provider.refresh_calls == ["refresh-initial"]


async def test_transient_refresh_failure_keeps_connection_usable(session_factory, db_session, fake_provider) -> None:
    row = await make_connection(db_session, expires_in=30)
    fake_provider.refresh_failures.append(TransientUpstreamError("token endpoint 503"))
    with pytest.raises(TransientUpstreamError):
        await ensure_fresh_token(db_session, row.id, clock=StepClock())
    stored = await _reload(session_factory, row.id)
    assert stored.status == "active"
    assert stored.refresh_lease_owner is None

    connection = await ensure_fresh_token(db_session, row.id, clock=StepClock())
    assert connection.access_token == "access-2"


async def test_concurrent_callers_share_one_refresh(session_factory, fake_provider) -> None:
    fake_provider.refresh_delay_s = 0.2
    async with session_factory() as session:
        row = await make_connection(session, expires_in=30)
    clock = StepClock()

    async def _caller():
        async with session_factory() as session:
            return await ensure_fresh_token(session, row.id, clock=clock)

    first, second = await asyncio.gather(_caller(), _caller())
    assert fake_provider.refresh_calls == ["refresh-initial"]
    assert first.access_token == second.access_token == "access-1"


async def test_slow_refresh_keeps_its_lease(session_factory, fake_provider, monkeypatch) -> None:
    monkeypatch.setenv("REFRESH_LEASE_TTL_SECONDS", "1")
    get_settings.cache_clear()
    fake_provider.refresh_delay_s = 1.5
    async with session_factory() as session:
        row = await make_connection(session, expires_in=30)

    async def _caller():
        async with session_factory() as session:
            return await ensure_fresh_token(session, row.id, clock=utc_now)

    first, second = await asyncio.gather(_caller(), _caller())
    assert fake_provider.refresh_calls == ["refresh-initial"]
    assert first.access_token == second.access_token == "access-1"
    stored = await _reload(session_factory, row.id)
    assert stored.refresh_lease_owner is None


async def test_rotated_tokens_are_only_written_by_the_lease_holder(db_session) -> None:
    row = await make_connection(db_session)
    now = utc_now()
    assert await connections_repo.claim_refresh_lease(
        db_session, connection_id=row.id, owner="holder", now=now, ttl_seconds=10
    )
    written = await connections_repo.store_refreshed_tokens(
        db_session, connection_id=row.id, owner="intruder", values={"last_error": "overwritten"}
    )
    assert written is False
    assert await connections_repo.store_refreshed_tokens(
        db_session, connection_id=row.id, owner="holder", values={"last_error": None}
    )


async def test_activate_enforces_ownership(session_factory, db_session) -> None:
    first = await make_connection(db_session, tenant_id="t1")
    second = await make_connection(db_session, tenant_id="t2")
    with pytest.raises(NotFoundError):
        await activate_connection(db_session, connection_id=first.id, user_id="someone-else")

    await activate_connection(db_session, connection_id=first.id, user_id="u1")
    first = await _reload(session_factory, first.id)
    second = await _reload(session_factory, second.id)
    assert (first.is_active, first.is_primary) == (True, True)
    assert (second.is_active, second.is_primary) == (False, False)


async def test_set_primary_requires_active_connection(db_session) -> None:
    first = await make_connection(db_session, tenant_id="t1")
    await make_connection(db_session, tenant_id="t2")
    with pytest.raises(ValidationError):
        await set_primary_connection(db_session, connection_id=first.id, user_id="u1")


async def test_disconnect_deactivates_even_when_revoke_fails(session_factory, db_session, fake_provider) -> None:
    row = await make_connection(db_session)
    fake_provider.revoke_error = TransientUpstreamError("revocation endpoint down")
    await disconnect(db_session, connection_id=row.id, user_id="u1")
    stored = await _reload(session_factory, row.id)
    assert (stored.is_active, stored.status) == (False, "inactive")
    assert fake_provider.revoke_calls == ["refresh-initial"]
    with pytest.raises(NotFoundError):
        await get_decrypted_connection(db_session, user_id="u1")
