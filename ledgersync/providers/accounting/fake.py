from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import AsyncIterator, Callable

from ledgersync.core.errors import NotFoundError
from ledgersync.providers.accounting.base import EntityRecord, ProviderCredentials, TokenBundle


class FakeAccountingProvider:
    """In-memory provider for tests and local development.

    Records every call so tests can assert on upstream traffic, and lets
    callers queue failures for the next fetches or refreshes.
    """

    name = "fake"

    def __init__(self, *, token_lifetime_seconds: int = 1800, refresh_delay_s: float = 0.0) -> None:
        self._entities: dict[tuple[str, str, str], EntityRecord] = {}
        self._token_lifetime_seconds = token_lifetime_seconds
        self.refresh_delay_s = refresh_delay_s
        self.refresh_calls: list[str] = []
        self.revoke_calls: list[str] = []
        self.fetch_calls: list[tuple[str, str, str]] = []
        self.list_calls: list[tuple[str, str, datetime | None]] = []
        self.fetch_failures: deque[Exception] = deque()
        self.refresh_failures: deque[Exception] = deque()
        self.revoke_error: Exception | None = None
        # Invoked with the page number before each list page is served.
        self.on_page: Callable[[int], None] | None = None

    def put(self, tenant_id: str, record: EntityRecord) -> None:
        self._entities[(tenant_id, record.entity_type, record.external_id)] = record

    async def exchange_code(
        self, code: str, *, redirect_uri: str, tenant_hint: str | None = None
    ) -> list[TokenBundle]:
        _ = redirect_uri
        return [
            TokenBundle(
                access_token=f"access-{code}",
                refresh_token=f"refresh-{code}",
                expires_in=self._token_lifetime_seconds,
                scopes=("accounting.transactions", "offline_access"),
                tenant_id=tenant_hint or "fake-tenant",
                tenant_name="Fake Organisation",
            )
        ]

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay_s:
            await asyncio.sleep(self.refresh_delay_s)
        if self.refresh_failures:
            raise self.refresh_failures.popleft()
        generation = len(self.refresh_calls)
        return TokenBundle(
            access_token=f"access-{generation}",
            refresh_token=f"refresh-{generation}",
            expires_in=self._token_lifetime_seconds,
            scopes=("accounting.transactions", "offline_access"),
        )

    async def revoke_token(self, refresh_token: str) -> None:
        self.revoke_calls.append(refresh_token)
        if self.revoke_error is not None:
            raise self.revoke_error

    async def fetch_entity(
        self, credentials: ProviderCredentials, entity_type: str, external_id: str
    ) -> EntityRecord:
        self.fetch_calls.append((credentials.tenant_id, entity_type, external_id))
        if self.fetch_failures:
            raise self.fetch_failures.popleft()
        record = self._entities.get((credentials.tenant_id, entity_type, external_id))
        if record is None:
            raise NotFoundError(f"fake {entity_type} {external_id} not found")
        return record

    async def list_entities(
        self,
        credentials: ProviderCredentials,
        entity_type: str,
        *,
        since: datetime | None,
        page_size: int,
    ) -> AsyncIterator[list[EntityRecord]]:
        self.list_calls.append((credentials.tenant_id, entity_type, since))
        matching = sorted(
            (
                record
                for (tenant_id, kind, _), record in self._entities.items()
                if tenant_id == credentials.tenant_id
                and kind == entity_type
                and (since is None or record.remote_updated_at > since)
            ),
            key=lambda record: (record.remote_updated_at, record.external_id),
        )
        for page_no, offset in enumerate(range(0, len(matching), max(1, page_size)), start=1):
            if self.on_page is not None:
                self.on_page(page_no)
            yield matching[offset : offset + page_size]
