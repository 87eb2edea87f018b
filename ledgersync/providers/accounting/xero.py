from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import format_datetime
import re
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


_INTEGRATION = "xero"
# entity type -> (endpoint, collection key, id field)
_ENDPOINTS: dict[str, tuple[str, str, str]] = {
    "contact": ("Contacts", "Contacts", "ContactID"),
    "account": ("Accounts", "Accounts", "AccountID"),
    "invoice": ("Invoices", "Invoices", "InvoiceID"),
    "credit_note": ("CreditNotes", "CreditNotes", "CreditNoteID"),
    "bank_transaction": ("BankTransactions", "BankTransactions", "BankTransactionID"),
    "payment": ("Payments", "Payments", "PaymentID"),
}
# Accounts come back as a single unpaged list.
_UNPAGED = frozenset({"account"})
_MS_DATE_RE = re.compile(r"/Date\((?P<ms>-?\d+)(?P<offset>[+-]\d{4})?\)/")


def parse_xero_datetime(value: Any) -> datetime | None:
    """Parse Xero's ``/Date(ms+0000)/`` wire format or an ISO-8601 string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    match = _MS_DATE_RE.fullmatch(text)
    if match:
        return datetime.fromtimestamp(int(match.group("ms")) / 1000.0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
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


def _nested_id(payload: dict[str, Any], key: str, id_field: str) -> str | None:
    nested = payload.get(key)
    if isinstance(nested, dict) and nested.get(id_field):
        return str(nested[id_field])
    return None


def to_entity_record(entity_type: str, payload: dict[str, Any]) -> EntityRecord:
    _, _, id_field = _ENDPOINTS[entity_type]
    external_id = payload.get(id_field)
    updated_at = parse_xero_datetime(payload.get("UpdatedDateUTC"))
    if not external_id or updated_at is None:
        raise ValidationError(f"xero {entity_type} payload missing {id_field} or UpdatedDateUTC")

    contact_id = _nested_id(payload, "Contact", "ContactID")
    references: list[EntityReference] = []
    snapshot: dict[str, Any] = {"currency_code": payload.get("CurrencyCode")}
    if entity_type == "contact":
        snapshot.update(name=payload.get("Name"), status=payload.get("ContactStatus"))
    elif entity_type == "account":
        snapshot.update(name=payload.get("Name"), status=payload.get("Status"), reference=payload.get("Code"))
    elif entity_type == "invoice":
        snapshot.update(
            name=(payload.get("Contact") or {}).get("Name"),
            status=payload.get("Status"),
            reference=payload.get("InvoiceNumber"),
            total=_decimal(payload.get("Total")),
            amount_due=_decimal(payload.get("AmountDue")),
            issued_on=parse_xero_datetime(payload.get("Date")),
            due_on=parse_xero_datetime(payload.get("DueDate")),
        )
    elif entity_type == "credit_note":
        snapshot.update(
            status=payload.get("Status"),
            reference=payload.get("CreditNoteNumber"),
            total=_decimal(payload.get("Total")),
            amount_due=_decimal(payload.get("RemainingCredit")),
            issued_on=parse_xero_datetime(payload.get("Date")),
        )
    elif entity_type == "bank_transaction":
        snapshot.update(
            status=payload.get("Status"),
            reference=payload.get("Reference"),
            total=_decimal(payload.get("Total")),
            issued_on=parse_xero_datetime(payload.get("Date")),
        )
        account_id = _nested_id(payload, "BankAccount", "AccountID")
        if account_id:
            references.append(EntityReference("account", account_id))
    elif entity_type == "payment":
        invoice = payload.get("Invoice") if isinstance(payload.get("Invoice"), dict) else {}
        contact_id = _nested_id(invoice, "Contact", "ContactID")
        snapshot.update(
            status=payload.get("Status"),
            reference=payload.get("Reference"),
            total=_decimal(payload.get("Amount")),
            issued_on=parse_xero_datetime(payload.get("Date")),
        )
        invoice_id = invoice.get("InvoiceID")
        if invoice_id:
            references.append(EntityReference("invoice", str(invoice_id)))
        account_id = _nested_id(payload, "Account", "AccountID")
        if account_id:
            references.append(EntityReference("account", account_id))
    if contact_id and entity_type != "contact":
        snapshot["contact_external_id"] = contact_id
        references.insert(0, EntityReference("contact", contact_id))
    return EntityRecord(
        entity_type=entity_type,
        external_id=str(external_id),
        remote_updated_at=updated_at,
        payload=payload,
        snapshot=snapshot,
        references=tuple(references),
    )


class XeroProvider:
    name = "xero"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client_auth(self) -> tuple[str, str]:
        settings = get_settings()
        if not settings.xero_client_id or not settings.xero_client_secret:
            raise ProviderConfigError("xero client credentials are not configured")
        return settings.xero_client_id, settings.xero_client_secret

    def _api_headers(self, credentials: ProviderCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.access_token}",
            "xero-tenant-id": credentials.tenant_id,
            "Accept": "application/json",
        }

    async def exchange_code(
        self, code: str, *, redirect_uri: str, tenant_hint: str | None = None
    ) -> list[TokenBundle]:
        settings = get_settings()
        grant = await request_token_grant(
            integration=_INTEGRATION,
            url=settings.xero_token_url,
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            auth=self._client_auth(),
            transport=self._transport,
        )
        # One grant can authorize several organisations; each becomes its own connection.
        response = await send_provider_request(
            integration=_INTEGRATION,
            method="GET",
            url=settings.xero_connections_url,
            headers={"Authorization": f"Bearer {grant.access_token}", "Accept": "application/json"},
            transport=self._transport,
        )
        bundles = []
        for tenant in response.json() or []:
            tenant_id = tenant.get("tenantId")
            if tenant_hint and tenant_id != tenant_hint:
                continue
            bundles.append(
                TokenBundle(
                    access_token=grant.access_token,
                    refresh_token=grant.refresh_token,
                    expires_in=grant.expires_in,
                    scopes=grant.scopes,
                    tenant_id=tenant_id,
                    tenant_name=tenant.get("tenantName"),
                )
            )
        return bundles

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        return await request_token_grant(
            integration=_INTEGRATION,
            url=get_settings().xero_token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=self._client_auth(),
            transport=self._transport,
        )

    async def revoke_token(self, refresh_token: str) -> None:
        await send_provider_request(
            integration=_INTEGRATION,
            method="POST",
            url=get_settings().xero_revoke_url,
            data={"token": refresh_token},
            auth=self._client_auth(),
            transport=self._transport,
        )

    async def fetch_entity(
        self, credentials: ProviderCredentials, entity_type: str, external_id: str
    ) -> EntityRecord:
        endpoint, collection, _ = _endpoint(entity_type)
        response = await send_provider_request(
            integration=_INTEGRATION,
            method="GET",
            url=f"{get_settings().xero_api_base_url}/{endpoint}/{external_id}",
            headers=self._api_headers(credentials),
            transport=self._transport,
        )
        items = response.json().get(collection) or []
        if not items:
            raise NotFoundError(f"xero {entity_type} {external_id} not found")
        return to_entity_record(entity_type, items[0])

    async def list_entities(
        self,
        credentials: ProviderCredentials,
        entity_type: str,
        *,
        since: datetime | None,
        page_size: int,
    ) -> AsyncIterator[list[EntityRecord]]:
        endpoint, collection, _ = _endpoint(entity_type)
        headers = self._api_headers(credentials)
        if since is not None:
            headers["If-Modified-Since"] = format_datetime(since.astimezone(timezone.utc), usegmt=True)
        url = f"{get_settings().xero_api_base_url}/{endpoint}"
        page = 1
        while True:
            params: dict[str, Any] = {}
            if entity_type not in _UNPAGED:
                params = {"page": page, "pageSize": page_size}
            response = await send_provider_request(
                integration=_INTEGRATION,
                method="GET",
                url=url,
                headers=headers,
                params=params,
                transport=self._transport,
            )
            items = response.json().get(collection) or []
            if items:
                yield [to_entity_record(entity_type, item) for item in items]
            if entity_type in _UNPAGED or len(items) < page_size:
                return
            page += 1


def _endpoint(entity_type: str) -> tuple[str, str, str]:
    try:
        return _ENDPOINTS[entity_type]
    except KeyError as exc:
        raise ValidationError(f"xero does not support entity type {entity_type}") from exc
