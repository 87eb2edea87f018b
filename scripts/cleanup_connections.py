from __future__ import annotations

import asyncio

from ledgersync.core.logging import configure_logging
from ledgersync.persistence.db import SessionLocal
from ledgersync.services.connections.maintenance import cleanup_connections


async def run() -> None:
    # Deactivate connections that have gone unused or stayed broken past the thresholds.
    configure_logging()
    summary = await cleanup_connections(SessionLocal)
    print(f"total={summary.total} deactivated={summary.deactivated} failed={summary.failed}")


if __name__ == "__main__":
    asyncio.run(run())
