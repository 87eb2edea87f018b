from __future__ import annotations

import os

# The engine module reads settings at import; pin a hermetic environment first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CREDENTIAL_VAULT_KEY", "11" * 32)
os.environ.setdefault("XERO_WEBHOOK_KEY", "xero-test-webhook-key")
os.environ.setdefault("QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN", "qbo-test-verifier-token")
os.environ.setdefault("XERO_CLIENT_ID", "xero-client")
os.environ.setdefault("XERO_CLIENT_SECRET", "xero-secret")
os.environ.setdefault("CB_REDIS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SYNC_EXECUTION_MODE", "inline")
os.environ.setdefault("REFRESH_LEASE_POLL_SECONDS", "0.02")
os.environ.setdefault("EXT_RETRY_BACKOFF_MS", "1")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ledgersync.core.config import get_settings
from ledgersync.domain.models import Base
from ledgersync.providers.accounting.factory import clear_provider_overrides, override_accounting_provider
from ledgersync.providers.accounting.fake import FakeAccountingProvider
from ledgersync.services.resilience import reset_circuit_breakers
from ledgersync.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state():
    # Settings, breakers, provider overrides and counters are process-wide.
    get_settings.cache_clear()
    reset_circuit_breakers()
    clear_provider_overrides()
    reset_telemetry()
    yield
    clear_provider_overrides()
    reset_circuit_breakers()
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path):
    # File-backed so separate sessions observe each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledgersync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_provider() -> FakeAccountingProvider:
    provider = FakeAccountingProvider()
    # xero-tagged connections and events resolve to the in-memory provider too.
    override_accounting_provider("fake", provider)
    override_accounting_provider("xero", provider)
    return provider


@pytest.fixture
async def client(session_factory):
    import httpx

    from ledgersync.apps.api.deps import get_session_factory
    from ledgersync.apps.api.main import create_app

    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
