"""add entitlement grant, usage and audit tables

Revision ID: 0001_entitlements
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_entitlements"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Track which packages each workspace holds; rows are closed, never deleted.
    op.create_table(
        "workspace_package_assignments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("package_code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default=sa.text("'active'"), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_cycle_anchor", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(), server_default=sa.text("'system'"), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_workspace_package_assignments_workspace_id",
        "workspace_package_assignments",
        ["workspace_id"],
        unique=False,
    )
    op.create_index(
        "ix_workspace_package_assignments_workspace_status",
        "workspace_package_assignments",
        ["workspace_id", "status"],
        unique=False,
    )

    # Per-workspace boosts; the check constraint backs the capped consumption update.
    op.create_table(
        "boosts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("feature_code", sa.String(), nullable=False),
        sa.Column("boost_type", sa.String(), nullable=False),
        sa.Column("duration_type", sa.String(), server_default=sa.text("'permanent'"), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=True),
        sa.Column("consumed_quantity", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(), server_default=sa.text("'active'"), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(), server_default=sa.text("'system'"), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
        sa.CheckConstraint("consumed_quantity >= 0", name="ck_boosts_consumed_non_negative"),
        sa.CheckConstraint(
            "limit_value IS NULL OR consumed_quantity <= limit_value",
            name="ck_boosts_consumed_within_limit",
        ),
    )
    op.create_index("ix_boosts_workspace_feature", "boosts", ["workspace_id", "feature_code"], unique=False)
    op.create_index(
        "ix_boosts_open_expiry",
        "boosts",
        ["expires_at"],
        unique=False,
        postgresql_where=sa.text("status NOT IN ('expired', 'cancelled', 'exhausted')"),
    )

    # Cumulative usage for none/monthly features, keyed by period.
    op.create_table(
        "usage_counters",
        sa.Column("workspace_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("feature_code", sa.String(), primary_key=True, nullable=False),
        sa.Column("period_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    # Raw events for rolling-window features, range-summed on read.
    op.create_table(
        "usage_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("feature_code", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.create_index(
        "ix_usage_events_scope_recorded",
        "usage_events",
        ["workspace_id", "feature_code", "recorded_at"],
        unique=False,
    )

    # Append-only audit trail of emitted entitlement events.
    op.create_table(
        "entitlement_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("feature_code", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("source", sa.String(), server_default=sa.text("'system'"), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_entitlement_logs_event_type", "entitlement_logs", ["event_type"], unique=False)
    op.create_index(
        "ix_entitlement_logs_workspace_occurred",
        "entitlement_logs",
        ["workspace_id", "occurred_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_entitlement_logs_workspace_occurred", table_name="entitlement_logs")
    op.drop_index("ix_entitlement_logs_event_type", table_name="entitlement_logs")
    op.drop_table("entitlement_logs")
    op.drop_index("ix_usage_events_scope_recorded", table_name="usage_events")
    op.drop_table("usage_events")
    op.drop_table("usage_counters")
    op.drop_index("ix_boosts_open_expiry", table_name="boosts")
    op.drop_index("ix_boosts_workspace_feature", table_name="boosts")
    op.drop_table("boosts")
    op.drop_index("ix_workspace_package_assignments_workspace_status", table_name="workspace_package_assignments")
    op.drop_index("ix_workspace_package_assignments_workspace_id", table_name="workspace_package_assignments")
    op.drop_table("workspace_package_assignments")
