from __future__ import annotations

import argparse
import asyncio

from ledgersync.core.logging import configure_logging
from ledgersync.persistence.db import SessionLocal
from ledgersync.services.webhooks.processor import process_pending_events


async def run(limit: int | None) -> None:
    # One claim-and-process pass over due webhook events.
    configure_logging()
    summary = await process_pending_events(SessionLocal, limit=limit, worker_id="script")
    print(
        f"claimed={summary.claimed} succeeded={summary.succeeded} retried={summary.retried} "
        f"skipped={summary.skipped} dead_lettered={summary.dead_lettered}"
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Process one batch of pending webhook events")
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(run(args.limit))
