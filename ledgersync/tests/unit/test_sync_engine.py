from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from ledgersync.core.config import get_settings
from ledgersync.core.errors import TransientUpstreamError, ValidationError
from ledgersync.domain.models import SyncRun
from ledgersync.persistence.repos import watermarks as watermarks_repo
from ledgersync.providers.accounting.base import EntityReference
from ledgersync.services.entity_cache import get_entity, list_unresolved_references
from ledgersync.services.sync.engine import Deadline, dependency_order, run_scheduled_sync, sync_connection
from ledgersync.tests.utils.factories import T0, StepClock, make_connection, record


JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _invoice(external_id: str, updated_at: datetime, contact_id: str = "c-1"):
    return record(
        "invoice",
        external_id,
        updated_at,
        references=(EntityReference("contact", contact_id),),
        contact_external_id=contact_id,
        status="AUTHORISED",
    )


def test_dependency_order_puts_referenced_types_first() -> None:
    order = dependency_order()
    assert set(order) == {"contact", "account", "invoice", "credit_note", "bank_transaction", "payment"}
    assert order.index("contact") < order.index("invoice") < order.index("payment")
    assert order.index("account") < order.index("bank_transaction")
    assert dependency_order(["payment", "contact", "invoice"]) == ["contact", "invoice", "payment"]
    with pytest.raises(ValidationError):
        dependency_order(["widgets"])


def test_deadline_uses_injected_monotonic() -> None:
    now = {"t": 0.0}
    deadline = Deadline(10, monotonic=lambda: now["t"])
    assert deadline.exhausted() is False
    now["t"] = 9.5
    assert deadline.remaining() == pytest.approx(0.5)
    now["t"] = 10.0
    assert deadline.exhausted() is True


async def test_incremental_sync_advances_watermark_to_start_time(session_factory, fake_provider) -> None:
    clock = StepClock()
    async with session_factory() as session:
        connection = await make_connection(session, user_id="u2", tenant_id="t2")
        await watermarks_repo.set_watermark(session, tenant_id="t2", entity_type="invoice", watermark=JAN_1)
        await session.commit()
    for n in range(3):
        fake_provider.put("t2", _invoice(f"inv-{n}", JAN_1 + timedelta(days=n + 1)))
    fake_provider.put("t2", _invoice("inv-old", JAN_1 - timedelta(days=3)))
    # Paging takes wall time; the watermark must not move with it.
    fake_provider.on_page = lambda _page: clock.advance(90)

    async with session_factory() as session:
        outcome = await sync_connection(session, connection.id, entity_types=["invoice"], clock=clock)

    assert outcome.success is True
    assert outcome.status == "succeeded"
    assert outcome.record_count == 3
    assert outcome.summary["invoice"]["inserted"] == 3
    assert outcome.summary["invoice"]["full_sync"] is False
    assert fake_provider.list_calls == [("t2", "invoice", JAN_1)]
    async with session_factory() as session:
        assert await watermarks_repo.get_watermark(session, tenant_id="t2", entity_type="invoice") == T0
        assert await get_entity(session, tenant_id="t2", entity_type="invoice", external_id="inv-old") is None
        run = (await session.execute(select(SyncRun))).scalar_one()
    assert (run.status, run.record_count, run.correlation_id) == ("succeeded", 3, outcome.correlation_id)
    assert run.finished_at > run.started_at


async def test_full_sync_runs_in_dependency_order(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        connection = await make_connection(session)
    fake_provider.put("t1", _invoice("inv-1", T0 - timedelta(days=1), contact_id="c-1"))
    fake_provider.put("t1", record("contact", "c-1", T0 - timedelta(days=2), name="Acme"))

    async with session_factory() as session:
        outcome = await sync_connection(session, connection.id, entity_types=["invoice", "contact"], clock=StepClock())

    assert [call[1] for call in fake_provider.list_calls] == ["contact", "invoice"]
    assert all(call[2] is None for call in fake_provider.list_calls)
    assert outcome.summary["invoice"]["unresolved"] == 0
    assert outcome.summary["contact"]["full_sync"] is True

    # Second run is incremental from the recorded watermark.
    async with session_factory() as session:
        await sync_connection(session, connection.id, entity_types=["contact"], clock=StepClock(T0 + timedelta(hours=1)))
    assert fake_provider.list_calls[-1] == ("t1", "contact", T0)


async def test_missing_reference_target_is_recorded(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        connection = await make_connection(session)
    fake_provider.put("t1", _invoice("inv-1", T0 - timedelta(days=1), contact_id="c-missing"))

    async with session_factory() as session:
        outcome = await sync_connection(session, connection.id, entity_types=["invoice"], clock=StepClock())
        edges = await list_unresolved_references(session, tenant_id="t1")

    assert outcome.summary["invoice"]["unresolved"] == 1
    assert [(edge.referenced_type, edge.referenced_external_id) for edge in edges] == [("contact", "c-missing")]


async def test_deadline_stops_between_pages_and_keeps_watermark(session_factory, fake_provider, monkeypatch) -> None:
    monkeypatch.setenv("SYNC_PAGE_SIZE", "2")
    get_settings.cache_clear()
    async with session_factory() as session:
        connection = await make_connection(session)
    for n in range(5):
        fake_provider.put("t1", record("contact", f"c-{n}", T0 - timedelta(hours=5 - n), name=f"Contact {n}"))
    now = {"t": 0.0}

    def _burn_budget(page: int) -> None:
        if page == 1:
            now["t"] = 100.0

    fake_provider.on_page = _burn_budget
    deadline = Deadline(10, monotonic=lambda: now["t"])

    async with session_factory() as session:
        outcome = await sync_connection(
            session, connection.id, entity_types=["contact"], clock=StepClock(), deadline=deadline
        )

    assert outcome.success is True
    assert outcome.status == "incomplete"
    assert outcome.record_count == 2
    assert outcome.summary["contact"]["status"] == "deadline_reached"
    async with session_factory() as session:
        # Applied pages stay; the next run re-reads from the old watermark.
        assert await get_entity(session, tenant_id="t1", entity_type="contact", external_id="c-0") is not None
        assert await watermarks_repo.get_watermark(session, tenant_id="t1", entity_type="contact") is None
        run = (await session.execute(select(SyncRun))).scalar_one()
    assert run.status == "incomplete"


async def test_provider_failure_marks_run_failed(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        connection = await make_connection(session)
    fake_provider.put("t1", record("contact", "c-1", T0, name="Acme"))

    def _fail(_page: int) -> None:
        raise TransientUpstreamError("rate limited", retry_after=60)

    fake_provider.on_page = _fail

    async with session_factory() as session:
        outcome = await sync_connection(session, connection.id, clock=StepClock())

    assert outcome.success is False
    assert outcome.status == "failed"
    assert outcome.error.startswith("TransientUpstreamError")
    # Types after the failure are not attempted.
    assert list(outcome.summary) == ["contact"]
    async with session_factory() as session:
        run = (await session.execute(select(SyncRun))).scalar_one()
        assert await watermarks_repo.get_watermark(session, tenant_id="t1", entity_type="contact") is None
    assert run.status == "failed"
    assert "rate limited" in run.error


async def test_unexpected_error_still_closes_the_run(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        connection = await make_connection(session)
    fake_provider.put("t1", record("contact", "c-1", T0, name="Acme"))

    def _garbled(_page: int) -> None:
        raise ValueError("Expecting value: line 1 column 1 (char 0)")

    fake_provider.on_page = _garbled

    async with session_factory() as session:
        outcome = await sync_connection(session, connection.id, clock=StepClock())

    assert (outcome.success, outcome.status) == (False, "failed")
    assert outcome.error.startswith("ValueError")
    assert outcome.as_response()["correlation_id"] == outcome.correlation_id
    async with session_factory() as session:
        run = (await session.execute(select(SyncRun))).scalar_one()
    assert run.status == "failed"
    assert run.finished_at is not None
    assert run.error.startswith("ValueError")


async def test_scheduled_sync_isolates_tenants(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        await make_connection(session, user_id="u1", tenant_id="t1")
        await make_connection(session, user_id="u2", provider="quickbooks", tenant_id="realm-2")
    fake_provider.put("t1", record("contact", "c-1", T0, name="Acme"))

    def _resolver(name: str):
        if name == "quickbooks":
            raise RuntimeError("quickbooks adapter misconfigured")
        return fake_provider

    summary = await run_scheduled_sync(session_factory, provider_resolver=_resolver, clock=StepClock())

    assert (summary.connections, summary.succeeded, summary.failed) == (2, 1, 1)
    assert summary.record_count == 1
