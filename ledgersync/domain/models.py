from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ledgersync.persistence.types import JsonType, UtcDateTime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "tenant_id", name="uq_connections_user_provider_tenant"),
        Index("ix_connections_provider_tenant", "provider", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # Variant tag selecting the provider adapter (xero, quickbooks, fake).
    provider: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String)
    tenant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # active | inactive | error
    status: Mapped[str] = mapped_column(String, default="active")
    # Ciphertext only; plaintext tokens never touch the database.
    access_token_encrypted: Mapped[str] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text)
    scopes: Mapped[list[str]] = mapped_column(JsonType, default=list)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    # Refresh tokens age out upstream even when unused; track issuance for health checks.
    refresh_token_issued_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_api_call_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    # Per-connection refresh lease; a null or past expiry means the lease is free.
    refresh_lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    refresh_lease_expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=utc_now, onupdate=utc_now, server_default=func.now()
    )


class SyncWatermark(Base):
    __tablename__ = "sync_watermarks"
    __table_args__ = (UniqueConstraint("tenant_id", "entity_type", name="uq_sync_watermarks_tenant_entity"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    # Anchored to the start of the last completed sync, never its completion.
    watermark: Mapped[datetime] = mapped_column(UtcDateTime)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, default=utc_now, onupdate=utc_now, server_default=func.now()
    )


class PendingWebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_webhook_events_dedupe_key"),
        Index("ix_webhook_events_due", "processed", "next_attempt_at", "created_at"),
        Index("ix_webhook_events_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String)
    dedupe_key: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    category: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str] = mapped_column(String)
    event_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    # pending | claimed | succeeded | skipped | dead_lettered
    status: Mapped[str] = mapped_column(String, default="pending")
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_until: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class CachedEntity(Base):
    __tablename__ = "cached_entities"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", "entity_type", name="uq_cached_entities_key"),
        Index("ix_cached_entities_tenant_type", "tenant_id", "entity_type"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    external_id: Mapped[str] = mapped_column(String)
    # contact | account | invoice | credit_note | bank_transaction | payment
    entity_type: Mapped[str] = mapped_column(String)
    # Normalized snapshot columns for querying without parsing raw payloads.
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    currency_code: Mapped[str | None] = mapped_column(String, nullable=True)
    total: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    amount_due: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    issued_on: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    due_on: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    # Only ever moves forward for a given key.
    remote_updated_at: Mapped[datetime] = mapped_column(UtcDateTime)
    local_updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())


class UnresolvedReference(Base):
    __tablename__ = "unresolved_references"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "external_id",
            "referenced_type",
            "referenced_external_id",
            name="uq_unresolved_references_edge",
        ),
        Index("ix_unresolved_references_target", "tenant_id", "referenced_type", "referenced_external_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    external_id: Mapped[str] = mapped_column(String)
    referenced_type: Mapped[str] = mapped_column(String)
    referenced_external_id: Mapped[str] = mapped_column(String)
    resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    connection_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Operators search logs by this id when a trigger reports failure.
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    # running | succeeded | incomplete | failed
    status: Mapped[str] = mapped_column(String, default="running")
    entity_types: Mapped[list[str]] = mapped_column(JsonType, default=list)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    summary_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now)
    finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True, default=utc_now)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    # Persist a stable event taxonomy for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized; credentials never reach this column.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utc_now, server_default=func.now())
