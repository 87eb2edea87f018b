from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator

import httpx

from ledgersync.core.config import get_settings
from ledgersync.core.errors import NotFoundError, ProviderConfigError, ValidationError
from ledgersync.providers.accounting.base import (
    EntityRecord,
    EntityReference,
    ProviderCredentials,
    TokenBundle,
)
from ledgersync.providers.accounting.http import request_token_grant, send_provider_request


_INTEGRATION = "quickbooks"
_RESOURCES: dict[str, str] = {
    "contact": "Customer",
    "account": "Account",
    "invoice": "Invoice",
    "credit_note": "CreditMemo",
    "bank_transaction": "Purchase",
    "payment": "Payment",
}


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _ref(payload: dict[str, Any], key: str) -> str | None:
    ref = payload.get(key)
    if isinstance(ref, dict) and ref.get("value"):
        return str(ref["value"])
    return None


def to_entity_record(entity_type: str, payload: dict[str, Any]) -> EntityRecord:
    external_id = payload.get("Id")
    updated_at = _parse_datetime((payload.get("MetaData") or {}).get("LastUpdatedTime"))
    if not external_id or updated_at is None:
        raise ValidationError(f"quickbooks {entity_type} payload missing Id or MetaData.LastUpdatedTime")

    snapshot: dict[str, Any] = {"currency_code": _ref(payload, "CurrencyRef")}
    references: list[EntityReference] = []
    if entity_type == "contact":
        snapshot.update(
            name=payload.get("DisplayName"),
            status="ACTIVE" if payload.get("Active", True) else "ARCHIVED",
        )
    elif entity_type == "account":
        snapshot.update(
            name=payload.get("Name"),
            status="ACTIVE" if payload.get("Active", True) else "ARCHIVED",
            reference=payload.get("AcctNum"),
        )
    else:
        snapshot.update(
            reference=payload.get("DocNumber") or payload.get("PaymentRefNum"),
            total=_decimal(payload.get("TotalAmt")),
            amount_due=_decimal(payload.get("Balance") if "Balance" in payload else payload.get("RemainingCredit")),
            issued_on=_parse_datetime(payload.get("TxnDate")),
            due_on=_parse_datetime(payload.get("DueDate")),
        )
        customer_id = _ref(payload, "CustomerRef") or _ref(payload, "EntityRef")
        if customer_id:
            snapshot["contact_external_id"] = customer_id
            references.append(EntityReference("contact", customer_id))
        account_id = _ref(payload, "AccountRef") or _ref(payload, "DepositToAccountRef")
        if account_id and entity_type in ("bank_transaction", "payment"):
            references.append(EntityReference("account", account_id))
        if entity_type == "payment":
            for line in payload.get("Line") or []:
                for linked in line.get("LinkedTxn") or []:
                    if linked.get("TxnType") == "Invoice" and linked.get("TxnId"):
                        references.append(EntityReference("invoice", str(linked["TxnId"])))
    return EntityRecord(
        entity_type=entity_type,
        external_id=str(external_id),
        remote_updated_at=updated_at,
        payload=payload,
        snapshot=snapshot,
        references=tuple(references),
    )


class QuickBooksProvider:
    """QuickBooks Online adapter; the tenant id is the company realm id."""

    name = "quickbooks"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client_auth(self) -> tuple[str, str]:
        settings = get_settings()
        if not settings.quickbooks_client_id or not settings.quickbooks_client_secret:
            raise ProviderConfigError("quickbooks client credentials are not configured")
        return settings.quickbooks_client_id, settings.quickbooks_client_secret

    def _company_url(self, realm_id: str) -> str:
        return f"{get_settings().quickbooks_api_base_url}/{realm_id}"

    def _api_headers(self, credentials: ProviderCredentials) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}", "Accept": "application/json"}

    async def exchange_code(
        self, code: str, *, redirect_uri: str, tenant_hint: str | None = None
    ) -> list[TokenBundle]:
        # The realm id arrives on the OAuth redirect, not in the token response.
        if not tenant_hint:
            raise ValidationError("quickbooks code exchange requires the realm id")
        grant = await request_token_grant(
            integration=_INTEGRATION,
            url=get_settings().quickbooks_token_url,
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            auth=self._client_auth(),
            transport=self._transport,
        )
        return [
            TokenBundle(
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_in=grant.expires_in,
                scopes=grant.scopes,
                tenant_id=tenant_hint,
            )
        ]

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        return await request_token_grant(
            integration=_INTEGRATION,
            url=get_settings().quickbooks_token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=self._client_auth(),
            transport=self._transport,
        )

    async def revoke_token(self, refresh_token: str) -> None:
        await send_provider_request(
            integration=_INTEGRATION,
            method="POST",
            url=get_settings().quickbooks_revoke_url,
            json={"token": refresh_token},
            auth=self._client_auth(),
            headers={"Accept": "application/json"},
            transport=self._transport,
        )

    async def fetch_entity(
        self, credentials: ProviderCredentials, entity_type: str, external_id: str
    ) -> EntityRecord:
        resource = _resource(entity_type)
        response = await send_provider_request(
            integration=_INTEGRATION,
            method="GET",
            url=f"{self._company_url(credentials.tenant_id)}/{resource.lower()}/{external_id}",
            headers=self._api_headers(credentials),
            params={"minorversion": get_settings().quickbooks_minor_version},
            transport=self._transport,
        )
        payload = response.json().get(resource)
        if not payload:
            raise NotFoundError(f"quickbooks {entity_type} {external_id} not found")
        return to_entity_record(entity_type, payload)

    async def list_entities(
        self,
        credentials: ProviderCredentials,
        entity_type: str,
        *,
        since: datetime | None,
        page_size: int,
    ) -> AsyncIterator[list[EntityRecord]]:
        resource = _resource(entity_type)
        where = ""
        if since is not None:
            stamp = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")
            where = f" WHERE Metadata.LastUpdatedTime > '{stamp}'"
        start = 1
        while True:
            query = f"SELECT * FROM {resource}{where} STARTPOSITION {start} MAXRESULTS {page_size}"
            response = await send_provider_request(
                integration=_INTEGRATION,
                method="GET",
                url=f"{self._company_url(credentials.tenant_id)}/query",
                headers=self._api_headers(credentials),
                params={"query": query, "minorversion": get_settings().quickbooks_minor_version},
                transport=self._transport,
            )
            items = (response.json().get("QueryResponse") or {}).get(resource) or []
            if items:
                yield [to_entity_record(entity_type, item) for item in items]
            if len(items) < page_size:
                return
            start += page_size


def _resource(entity_type: str) -> str:
    try:
        return _RESOURCES[entity_type]
    except KeyError as exc:
        raise ValidationError(f"quickbooks does not support entity type {entity_type}") from exc
