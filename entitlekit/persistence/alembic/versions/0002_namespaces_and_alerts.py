"""add namespace scoping and usage alert history

Revision ID: 0002_namespaces_and_alerts
Revises: 0001_entitlements
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_namespaces_and_alerts"
down_revision = "0001_entitlements"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Grants may belong to a namespace inside the workspace; NULL keeps them workspace-wide.
    op.add_column("workspace_package_assignments", sa.Column("namespace_id", sa.String(), nullable=True))
    op.create_index(
        "ix_workspace_package_assignments_namespace",
        "workspace_package_assignments",
        ["workspace_id", "namespace_id"],
        unique=False,
    )
    op.add_column("boosts", sa.Column("namespace_id", sa.String(), nullable=True))
    op.create_index(
        "ix_boosts_namespace_feature",
        "boosts",
        ["workspace_id", "namespace_id", "feature_code"],
        unique=False,
    )

    # Ledger rows use '' for workspace-wide usage so the namespace can join the primary key.
    op.add_column(
        "usage_counters",
        sa.Column("namespace_id", sa.String(), server_default=sa.text("''"), nullable=False),
    )
    op.drop_constraint("usage_counters_pkey", "usage_counters", type_="primary")
    op.create_primary_key(
        "usage_counters_pkey",
        "usage_counters",
        ["workspace_id", "namespace_id", "feature_code", "period_key"],
    )
    op.add_column(
        "usage_events",
        sa.Column("namespace_id", sa.String(), server_default=sa.text("''"), nullable=False),
    )
    op.drop_index("ix_usage_events_scope_recorded", table_name="usage_events")
    op.create_index(
        "ix_usage_events_scope_recorded",
        "usage_events",
        ["workspace_id", "namespace_id", "feature_code", "recorded_at"],
        unique=False,
    )

    # One open alert per workspace/feature/threshold; resolved rows stay as history.
    op.create_table(
        "usage_alert_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("feature_code", sa.String(), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "uq_usage_alert_history_open",
        "usage_alert_history",
        ["workspace_id", "feature_code", "threshold"],
        unique=True,
        postgresql_where=sa.text("resolved_at IS NULL"),
    )
    op.create_index(
        "ix_usage_alert_history_workspace_created",
        "usage_alert_history",
        ["workspace_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_usage_alert_history_workspace_created", table_name="usage_alert_history")
    op.drop_index("uq_usage_alert_history_open", table_name="usage_alert_history")
    op.drop_table("usage_alert_history")
    op.drop_index("ix_usage_events_scope_recorded", table_name="usage_events")
    op.create_index(
        "ix_usage_events_scope_recorded",
        "usage_events",
        ["workspace_id", "feature_code", "recorded_at"],
        unique=False,
    )
    op.drop_column("usage_events", "namespace_id")
    op.drop_constraint("usage_counters_pkey", "usage_counters", type_="primary")
    op.execute("DELETE FROM usage_counters WHERE namespace_id <> ''")
    op.drop_column("usage_counters", "namespace_id")
    op.create_primary_key("usage_counters_pkey", "usage_counters", ["workspace_id", "feature_code", "period_key"])
    op.drop_index("ix_boosts_namespace_feature", table_name="boosts")
    op.drop_column("boosts", "namespace_id")
    op.drop_index("ix_workspace_package_assignments_namespace", table_name="workspace_package_assignments")
    op.drop_column("workspace_package_assignments", "namespace_id")
