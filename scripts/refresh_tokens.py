from __future__ import annotations

import asyncio

from ledgersync.core.logging import configure_logging
from ledgersync.persistence.db import SessionLocal
from ledgersync.services.connections.maintenance import refresh_expiring_connections


async def run() -> None:
    configure_logging()
    summary = await refresh_expiring_connections(SessionLocal)
    print(
        f"total={summary.total} refreshed={summary.refreshed} failed={summary.failed} "
        f"reconnect_required={summary.reconnect_required}"
    )


if __name__ == "__main__":
    asyncio.run(run())
