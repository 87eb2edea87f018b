from __future__ import annotations

import argparse
import asyncio
import json

from ledgersync.core.logging import configure_logging
from ledgersync.persistence.db import SessionLocal
from ledgersync.services.sync.engine import run_scheduled_sync, sync_connection


async def run(connection_id: str | None, entity_types: list[str] | None) -> None:
    configure_logging()
    if connection_id is None:
        summary = await run_scheduled_sync(SessionLocal)
        print(
            f"connections={summary.connections} succeeded={summary.succeeded} "
            f"incomplete={summary.incomplete} failed={summary.failed} records={summary.record_count}"
        )
        return
    async with SessionLocal() as session:
        outcome = await sync_connection(session, connection_id, entity_types=entity_types)
    print(json.dumps(outcome.as_response(), indent=2, sort_keys=True))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run incremental sync for one connection or all of them")
    parser.add_argument("--connection-id", default=None)
    parser.add_argument("--entity-type", action="append", dest="entity_types", default=None)
    args = parser.parse_args()
    asyncio.run(run(args.connection_id, args.entity_types))
