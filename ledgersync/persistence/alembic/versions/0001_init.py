"""initial ledgersync schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    op.create_table(
        "connections",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("tenant_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=False),
        sa.Column("scopes", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _ts("expires_at", nullable=False),
        _ts("refresh_token_issued_at"),
        _ts("last_api_call_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refresh_lease_owner", sa.String(), nullable=True),
        _ts("refresh_lease_expires_at"),
        _ts("created_at", nullable=False, server_default=True),
        _ts("updated_at", nullable=False, server_default=True),
        sa.UniqueConstraint("user_id", "provider", "tenant_id", name="uq_connections_user_provider_tenant"),
    )
    op.create_index("ix_connections_user_id", "connections", ["user_id"], unique=False)
    op.create_index("ix_connections_provider_tenant", "connections", ["provider", "tenant_id"], unique=False)

    op.create_table(
        "sync_watermarks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        _ts("watermark", nullable=False),
        _ts("updated_at", nullable=False, server_default=True),
        sa.UniqueConstraint("tenant_id", "entity_type", name="uq_sync_watermarks_tenant_entity"),
    )

    # Events are never deleted; processed rows stay as the audit trail.
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        _ts("event_date"),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at"),
        sa.Column("claimed_by", sa.String(), nullable=True),
        _ts("claimed_until"),
        _ts("created_at", nullable=False, server_default=True),
        _ts("processed_at"),
        sa.UniqueConstraint("dedupe_key", name="uq_webhook_events_dedupe_key"),
    )
    op.create_index("ix_webhook_events_tenant_id", "webhook_events", ["tenant_id"], unique=False)
    op.create_index(
        "ix_webhook_events_due",
        "webhook_events",
        ["processed", "next_attempt_at", "created_at"],
        unique=False,
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"], unique=False)

    op.create_table(
        "cached_entities",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("contact_external_id", sa.String(), nullable=True),
        sa.Column("currency_code", sa.String(), nullable=True),
        sa.Column("total", sa.Numeric(18, 4), nullable=True),
        sa.Column("amount_due", sa.Numeric(18, 4), nullable=True),
        _ts("issued_on"),
        _ts("due_on"),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("remote_updated_at", nullable=False),
        _ts("local_updated_at", nullable=False),
        _ts("created_at", nullable=False, server_default=True),
        sa.UniqueConstraint("tenant_id", "external_id", "entity_type", name="uq_cached_entities_key"),
    )
    op.create_index("ix_cached_entities_tenant_type", "cached_entities", ["tenant_id", "entity_type"], unique=False)

    op.create_table(
        "unresolved_references",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("referenced_type", sa.String(), nullable=False),
        sa.Column("referenced_external_id", sa.String(), nullable=False),
        _ts("resolved_at"),
        _ts("created_at", nullable=False, server_default=True),
        sa.UniqueConstraint(
            "tenant_id",
            "entity_type",
            "external_id",
            "referenced_type",
            "referenced_external_id",
            name="uq_unresolved_references_edge",
        ),
    )
    op.create_index(
        "ix_unresolved_references_target",
        "unresolved_references",
        ["tenant_id", "referenced_type", "referenced_external_id"],
        unique=False,
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("connection_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="running"),
        sa.Column("entity_types", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("started_at", nullable=False),
        _ts("finished_at"),
    )
    op.create_index("ix_sync_runs_connection_id", "sync_runs", ["connection_id"], unique=False)
    op.create_index("ix_sync_runs_tenant_id", "sync_runs", ["tenant_id"], unique=False)
    op.create_index("ix_sync_runs_correlation_id", "sync_runs", ["correlation_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        _ts("occurred_at", nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"], unique=False)
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_user_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_sync_runs_correlation_id", table_name="sync_runs")
    op.drop_index("ix_sync_runs_tenant_id", table_name="sync_runs")
    op.drop_index("ix_sync_runs_connection_id", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_unresolved_references_target", table_name="unresolved_references")
    op.drop_table("unresolved_references")
    op.drop_index("ix_cached_entities_tenant_type", table_name="cached_entities")
    op.drop_table("cached_entities")
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_due", table_name="webhook_events")
    op.drop_index("ix_webhook_events_tenant_id", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("sync_watermarks")
    op.drop_index("ix_connections_provider_tenant", table_name="connections")
    op.drop_index("ix_connections_user_id", table_name="connections")
    op.drop_table("connections")
