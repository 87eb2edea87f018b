from __future__ import annotations

from datetime import timedelta

from ledgersync.core.errors import AuthenticationError
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.services.connections.maintenance import cleanup_connections, refresh_expiring_connections
from ledgersync.tests.utils.factories import T0, StepClock, make_connection


async def test_sweep_refreshes_and_isolates_failures(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        doomed = await make_connection(session, user_id="u-doomed", expires_in=60)
        healthy = await make_connection(session, user_id="u-healthy", expires_in=900)
        far = await make_connection(session, user_id="u-far", expires_in=7200)
    # Oldest expiry is swept first and takes the queued failure.
    fake_provider.refresh_failures.append(AuthenticationError("invalid_grant"))

    summary = await refresh_expiring_connections(session_factory, clock=StepClock())

    assert (summary.total, summary.refreshed, summary.failed, summary.reconnect_required) == (2, 1, 1, 1)
    assert summary.failures[0]["connection_id"] == doomed.id
    async with session_factory() as session:
        assert (await connections_repo.get_connection(session, doomed.id)).status == "error"
        refreshed = await connections_repo.get_connection(session, healthy.id)
        untouched = await connections_repo.get_connection(session, far.id)
    assert refreshed.expires_at == T0 + timedelta(seconds=1800)
    assert untouched.expires_at == T0 + timedelta(seconds=7200)
    assert len(fake_provider.refresh_calls) == 2


async def test_cleanup_deactivates_abandoned_connections(session_factory, fake_provider) -> None:
    later = T0 + timedelta(days=61)
    async with session_factory() as session:
        abandoned = await make_connection(session, user_id="u-old", now=T0)
        recent = await make_connection(session, user_id="u-new", now=later)

    summary = await cleanup_connections(session_factory, clock=StepClock(later))

    assert (summary.total, summary.deactivated, summary.failed) == (1, 1, 0)
    async with session_factory() as session:
        assert (await connections_repo.get_connection(session, abandoned.id)).is_active is False
        assert (await connections_repo.get_connection(session, recent.id)).is_active is True
    assert len(fake_provider.revoke_calls) == 1
