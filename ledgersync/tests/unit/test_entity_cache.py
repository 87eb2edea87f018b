from __future__ import annotations

from datetime import timedelta

import pytest

from ledgersync.providers.accounting.base import EntityReference
from ledgersync.services import entity_cache
from ledgersync.services.entity_cache import apply_record, get_entity, list_unresolved_references, upsert
from ledgersync.tests.utils.factories import T0, record


async def _upsert(session, updated_at, name: str, *, now=T0 + timedelta(minutes=5)):
    outcome = await upsert(
        session,
        tenant_id="t1",
        entity_type="contact",
        external_id="c1",
        payload={"Name": name},
        remote_updated_at=updated_at,
        snapshot={"name": name},
        now=now,
    )
    await session.commit()
    return outcome


async def test_forward_only_updates(db_session) -> None:
    assert await _upsert(db_session, T0, "Acme") == "inserted"
    assert await _upsert(db_session, T0 + timedelta(seconds=1), "Acme Ltd") == "updated"
    assert await _upsert(db_session, T0, "Acme (old)") == "stale"

    cached = await get_entity(db_session, tenant_id="t1", entity_type="contact", external_id="c1")
    assert cached.name == "Acme Ltd"
    assert cached.raw_payload == {"Name": "Acme Ltd"}
    assert cached.remote_updated_at == T0 + timedelta(seconds=1)


async def test_equal_timestamp_only_touches_local_updated_at(session_factory) -> None:
    async with session_factory() as session:
        await _upsert(session, T0, "Acme", now=T0 + timedelta(minutes=5))
        outcome = await _upsert(session, T0, "Acme Renamed", now=T0 + timedelta(minutes=9))
    assert outcome == "unchanged"

    async with session_factory() as session:
        cached = await get_entity(session, tenant_id="t1", entity_type="contact", external_id="c1")
    assert (cached.name, cached.raw_payload) == ("Acme", {"Name": "Acme"})
    assert cached.remote_updated_at == T0
    assert cached.local_updated_at == T0 + timedelta(minutes=9)


async def test_newer_write_survives_losing_the_insert_race(db_session, monkeypatch) -> None:
    real_insert = entity_cache.insert_or_ignore

    async def insert_after_concurrent_writer(session, table, values, **kwargs):
        # A concurrent writer lands an older snapshot between our first update and our insert.
        older = {**values, "name": "Older", "raw_payload": {"Name": "Older"}, "remote_updated_at": T0}
        await real_insert(session, table, older, **kwargs)
        return await real_insert(session, table, values, **kwargs)

    monkeypatch.setattr(entity_cache, "insert_or_ignore", insert_after_concurrent_writer)
    outcome = await _upsert(db_session, T0 + timedelta(hours=1), "Newer")

    assert outcome == "updated"
    cached = await get_entity(db_session, tenant_id="t1", entity_type="contact", external_id="c1")
    assert cached.name == "Newer"
    assert cached.remote_updated_at == T0 + timedelta(hours=1)


async def test_arrival_order_does_not_change_final_state(session_factory) -> None:
    newer = record("contact", "c1", T0 + timedelta(hours=1), name="Newer")
    older = record("contact", "c1", T0, name="Older")
    async with session_factory() as session:
        await apply_record(session, tenant_id="ta", record=newer)
        await apply_record(session, tenant_id="ta", record=older)
        await apply_record(session, tenant_id="tb", record=older)
        await apply_record(session, tenant_id="tb", record=newer)
        await session.commit()
        a = await get_entity(session, tenant_id="ta", entity_type="contact", external_id="c1")
        b = await get_entity(session, tenant_id="tb", entity_type="contact", external_id="c1")
    assert a.name == b.name == "Newer"
    assert a.remote_updated_at == b.remote_updated_at


async def test_tenants_and_types_are_isolated(db_session) -> None:
    await apply_record(db_session, tenant_id="t1", record=record("contact", "x", T0, name="Contact"))
    await apply_record(db_session, tenant_id="t1", record=record("account", "x", T0, name="Account"))
    await apply_record(db_session, tenant_id="t2", record=record("contact", "x", T0, name="Other org"))
    await db_session.commit()
    contact = await get_entity(db_session, tenant_id="t1", entity_type="contact", external_id="x")
    other = await get_entity(db_session, tenant_id="t2", entity_type="contact", external_id="x")
    assert (contact.name, other.name) == ("Contact", "Other org")


async def test_dangling_reference_is_tracked_then_resolved(db_session) -> None:
    invoice = record("invoice", "inv-1", T0, references=(EntityReference("contact", "c-9"),), contact_external_id="c-9")
    result = await apply_record(db_session, tenant_id="t1", record=invoice)
    await db_session.commit()
    assert result.outcome == "inserted"
    assert result.unresolved == (EntityReference("contact", "c-9"),)
    [edge] = await list_unresolved_references(db_session, tenant_id="t1")
    assert (edge.external_id, edge.referenced_type, edge.referenced_external_id) == ("inv-1", "contact", "c-9")

    await apply_record(db_session, tenant_id="t1", record=record("contact", "c-9", T0, name="Late contact"))
    await db_session.commit()
    assert await list_unresolved_references(db_session, tenant_id="t1") == []


async def test_naive_timestamp_is_rejected(db_session) -> None:
    with pytest.raises(ValueError):
        await upsert(
            db_session,
            tenant_id="t1",
            entity_type="contact",
            external_id="c1",
            payload={},
            remote_updated_at=T0.replace(tzinfo=None),
        )
