"""Integrations, canonical event log and the background job queue.

Revision ID: 001_ingestion_schema
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


revision: str = "001_ingestion_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "integration_groups",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("service", sa.Text, nullable=False),
        sa.Column("account_id", sa.Text, nullable=True),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auth_metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("primary_integration_id", sa.Text, nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_integration_groups_user_id", "integration_groups", ["user_id"])
    op.create_index("ix_integration_groups_service", "integration_groups", ["service"])
    op.create_index("ix_integration_groups_account_id", "integration_groups", ["account_id"])
    op.create_index(
        "integration_groups_user_service_account_unique",
        "integration_groups",
        ["user_id", "service", "account_id"],
        unique=True,
        postgresql_where=sa.text("account_id IS NOT NULL"),
    )

    op.create_table(
        "integrations",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column(
            "integration_group_id",
            sa.Text,
            sa.ForeignKey("integration_groups.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("service", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=True),
        sa.Column("account_id", sa.Text, nullable=True),
        sa.Column("instance_type", sa.Text, nullable=True),
        sa.Column("configuration", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_update_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("migration_batch_id", sa.Text, nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    for column in ("user_id", "integration_group_id", "service", "account_id", "status", "migration_batch_id"):
        op.create_index(f"ix_integrations_{column}", "integrations", [column])

    op.create_table(
        "objects",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("concept", sa.Text, nullable=False),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("url", sa.Text, nullable=True),
        sa.Column("media_url", sa.Text, nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "concept", "type", "title", name="objects_identity_unique"),
    )
    op.create_index("ix_objects_user_id", "objects", ["user_id"])

    op.create_table(
        "events",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("source_id", sa.Text, nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("integration_id", sa.Text, sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("actor_id", sa.Text, sa.ForeignKey("objects.id"), nullable=False),
        sa.Column("target_id", sa.Text, sa.ForeignKey("objects.id"), nullable=False),
        sa.Column("service", sa.Text, nullable=False),
        sa.Column("domain", sa.Text, nullable=False),
        sa.Column("action", sa.Text, nullable=False),
        sa.Column("value", sa.BigInteger, nullable=True),
        sa.Column("value_multiplier", sa.Integer, nullable=True),
        sa.Column("value_unit", sa.Text, nullable=True),
        sa.Column("event_metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("integration_id", "source_id", name="events_integration_source_unique"),
    )
    op.create_index("events_integration_time_idx", "events", ["integration_id", "time"])
    op.create_index("events_service_action_idx", "events", ["service", "action"])

    op.create_table(
        "blocks",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("event_id", sa.Text, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("integration_id", sa.Text, sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("block_type", sa.Text, nullable=True),
        sa.Column("time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("title", sa.Text, nullable=True),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("url", sa.Text, nullable=True),
        sa.Column("media_url", sa.Text, nullable=True),
        sa.Column("value", sa.BigInteger, nullable=True),
        sa.Column("value_multiplier", sa.Integer, nullable=True),
        sa.Column("value_unit", sa.Text, nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_blocks_event_id", "blocks", ["event_id"])

    op.create_table(
        "background_job",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("integration_id", sa.Text, nullable=True),
        sa.Column("job_type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),  # queued, running, succeeded, failed, cancelled
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resource_key", sa.Text, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Integer, nullable=False, server_default="120"),
        sa.Column("lease_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unique_key", sa.Text, nullable=True),
        sa.Column("batch_id", sa.Text, nullable=True),
        sa.Column("payload", sa.JSON, nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("chain", sa.JSON, nullable=False, server_default=sa.text("'[]'::json")),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("background_job_status_run_idx", "background_job", ["status", "run_at"])
    op.create_index("background_job_type_idx", "background_job", ["job_type"])
    op.create_index("background_job_integration_idx", "background_job", ["integration_id"])
    op.create_index("background_job_batch_idx", "background_job", ["batch_id"])
    op.create_index("background_job_lease_idx", "background_job", ["lease_until"])

    # Logically identical work may only be pending once at a time.
    op.create_index(
        "background_job_active_unique_key",
        "background_job",
        ["unique_key"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'running')"),
    )


def downgrade() -> None:
    op.drop_table("background_job")
    op.drop_table("blocks")
    op.drop_table("events")
    op.drop_table("objects")
    op.drop_table("integrations")
    op.drop_table("integration_groups")
