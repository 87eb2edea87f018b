from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ledgersync.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    # SQLite (tests, local runs) gets no pool sizing; asyncpg gets bounded pools.
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)}
        }
    return options


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    resolved = settings or get_settings()
    return create_async_engine(resolved.database_url, **engine_options(resolved))


engine = build_engine()
# Sync workers and webhook processing read rows after commit, so nothing expires.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
