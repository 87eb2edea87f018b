from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ledgersync.core.config import Settings
from ledgersync.core.errors import NotFoundError, ValidationError


# Provider category -> cached entity type.
CATEGORY_ENTITY_TYPES: dict[str, str] = {
    "CONTACT": "contact",
    "ACCOUNT": "account",
    "INVOICE": "invoice",
    "CREDITNOTE": "credit_note",
    "BANKTRANSACTION": "bank_transaction",
    "PAYMENT": "payment",
}
_QUICKBOOKS_CATEGORIES: dict[str, str] = {
    "Customer": "CONTACT",
    "Vendor": "CONTACT",
    "Account": "ACCOUNT",
    "Invoice": "INVOICE",
    "CreditMemo": "CREDITNOTE",
    "Purchase": "BANKTRANSACTION",
    "Payment": "PAYMENT",
}


@dataclass(frozen=True)
class InboundEvent:
    tenant_id: str
    category: str
    event_type: str
    resource_id: str
    event_date: datetime | None
    raw: dict[str, Any] = field(default_factory=dict)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"invalid event timestamp {value!r}") from exc
    # Provider timestamps without an offset are UTC.
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _load_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("webhook body is not valid JSON") from exc


class XeroEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    tenant_id: str = Field(alias="tenantId", min_length=1)
    tenant_type: str | None = Field(default=None, alias="tenantType")
    event_category: str = Field(alias="eventCategory", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    event_date_utc: str | None = Field(default=None, alias="eventDateUtc")
    resource_id: str = Field(alias="resourceId", min_length=1)
    resource_url: str | None = Field(default=None, alias="resourceUrl")


class XeroWebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    events: list[XeroEvent] = Field(default_factory=list)
    first_event_sequence: int | None = Field(default=None, alias="firstEventSequence")
    last_event_sequence: int | None = Field(default=None, alias="lastEventSequence")
    entropy: str | None = None


class WebhookDialect(Protocol):
    provider: str
    signature_header: str

    def shared_key(self, settings: Settings) -> str | None:
        ...

    def parse(self, raw_body: bytes) -> list[InboundEvent]:
        ...


class XeroWebhookDialect:
    provider = "xero"
    signature_header = "x-xero-signature"

    def shared_key(self, settings: Settings) -> str | None:
        return settings.xero_webhook_key

    def parse(self, raw_body: bytes) -> list[InboundEvent]:
        try:
            payload = XeroWebhookPayload.model_validate(_load_json(raw_body))
        except PydanticValidationError as exc:
            raise ValidationError(f"malformed xero webhook payload: {exc.error_count()} errors") from exc
        return [
            InboundEvent(
                tenant_id=event.tenant_id,
                category=event.event_category.upper(),
                event_type=event.event_type.upper(),
                resource_id=event.resource_id,
                event_date=_parse_timestamp(event.event_date_utc),
                raw=event.model_dump(by_alias=True),
            )
            for event in payload.events
        ]


class QuickBooksWebhookDialect:
    provider = "quickbooks"
    signature_header = "intuit-signature"

    def shared_key(self, settings: Settings) -> str | None:
        return settings.quickbooks_webhook_verifier_token

    def parse(self, raw_body: bytes) -> list[InboundEvent]:
        payload = _load_json(raw_body)
        if not isinstance(payload, dict) or not isinstance(payload.get("eventNotifications", []), list):
            raise ValidationError("malformed quickbooks webhook payload")
        events: list[InboundEvent] = []
        for notification in payload.get("eventNotifications", []):
            change = notification.get("dataChangeEvent") if isinstance(notification, dict) else None
            realm_id = notification.get("realmId") if isinstance(notification, dict) else None
            entities = change.get("entities") if isinstance(change, dict) else None
            if not realm_id or not isinstance(entities, list):
                raise ValidationError("quickbooks notification missing realmId or entities")
            for entity in entities:
                if not isinstance(entity, dict):
                    raise ValidationError("quickbooks entity must be an object")
                name = entity.get("name")
                resource_id = entity.get("id")
                category = _QUICKBOOKS_CATEGORIES.get(str(name))
                if not resource_id or category is None:
                    raise ValidationError(f"unsupported quickbooks entity {name!r}")
                events.append(
                    InboundEvent(
                        tenant_id=str(realm_id),
                        category=category,
                        event_type=str(entity.get("operation") or "UPDATE").upper(),
                        resource_id=str(resource_id),
                        event_date=_parse_timestamp(entity.get("lastUpdated")),
                        raw={"realmId": realm_id, **entity},
                    )
                )
        return events


_DIALECTS: dict[str, WebhookDialect] = {
    "xero": XeroWebhookDialect(),
    "quickbooks": QuickBooksWebhookDialect(),
}


def get_webhook_dialect(provider: str) -> WebhookDialect:
    dialect = _DIALECTS.get(provider.lower())
    if dialect is None:
        raise NotFoundError(f"no webhook endpoint for provider {provider}")
    return dialect
