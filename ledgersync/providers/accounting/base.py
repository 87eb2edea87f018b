from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Protocol

import jwt


# Types with no outbound references come first; payments point at invoices and accounts.
ENTITY_TYPES: tuple[str, ...] = ("contact", "account", "invoice", "credit_note", "bank_transaction", "payment")
ENTITY_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "contact": (),
    "account": (),
    "invoice": ("contact",),
    "credit_note": ("contact",),
    "bank_transaction": ("contact", "account"),
    "payment": ("invoice", "account"),
}

SNAPSHOT_FIELDS: tuple[str, ...] = (
    "name",
    "status",
    "reference",
    "contact_external_id",
    "currency_code",
    "total",
    "amount_due",
    "issued_on",
    "due_on",
)


@dataclass(frozen=True)
class TokenBundle:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int | None
    scopes: tuple[str, ...] = ()
    tenant_id: str | None = None
    tenant_name: str | None = None


@dataclass(frozen=True)
class ProviderCredentials:
    """What an adapter needs to call the API for one tenant."""

    tenant_id: str
    access_token: str = field(repr=False)


@dataclass(frozen=True)
class EntityReference:
    entity_type: str
    external_id: str


@dataclass(frozen=True)
class EntityRecord:
    entity_type: str
    external_id: str
    remote_updated_at: datetime
    payload: dict[str, Any]
    snapshot: dict[str, Any] = field(default_factory=dict)
    references: tuple[EntityReference, ...] = ()


class AccountingProvider(Protocol):
    name: str

    async def exchange_code(
        self, code: str, *, redirect_uri: str, tenant_hint: str | None = None
    ) -> list[TokenBundle]:
        ...

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        ...

    async def revoke_token(self, refresh_token: str) -> None:
        ...

    async def fetch_entity(
        self, credentials: ProviderCredentials, entity_type: str, external_id: str
    ) -> EntityRecord:
        ...

    def list_entities(
        self,
        credentials: ProviderCredentials,
        entity_type: str,
        *,
        since: datetime | None,
        page_size: int,
    ) -> AsyncIterator[list[EntityRecord]]:
        ...


def _jwt_exp(token: str) -> int | None:
    # Read the unverified exp claim; the token is opaque to us beyond its lifetime.
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    return int(exp) if isinstance(exp, (int, float)) else None


def token_expiry(bundle: TokenBundle, *, now: datetime, default_lifetime_seconds: int) -> datetime:
    """Expiry from the JWT exp claim when present, else ``expires_in``."""
    exp = _jwt_exp(bundle.access_token)
    if exp is not None:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    lifetime = bundle.expires_in if bundle.expires_in and bundle.expires_in > 0 else default_lifetime_seconds
    return now + timedelta(seconds=int(lifetime))
