from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


ASSIGNMENT_STATUS_ACTIVE = "active"
ASSIGNMENT_STATUS_SUSPENDED = "suspended"
ASSIGNMENT_STATUS_CANCELLED = "cancelled"

BOOST_TYPE_ENABLE = "enable"
BOOST_TYPE_ADD_LIMIT = "add_limit"
BOOST_TYPE_UNLIMITED = "unlimited"
BOOST_TYPES = {BOOST_TYPE_ENABLE, BOOST_TYPE_ADD_LIMIT, BOOST_TYPE_UNLIMITED}

BOOST_DURATION_PERMANENT = "permanent"
BOOST_DURATION_TIME_BOUNDED = "time_bounded"
BOOST_DURATION_CYCLE_BOUND = "cycle_bound"
BOOST_DURATIONS = {BOOST_DURATION_PERMANENT, BOOST_DURATION_TIME_BOUNDED, BOOST_DURATION_CYCLE_BOUND}

BOOST_STATUS_PENDING = "pending"
BOOST_STATUS_ACTIVE = "active"
BOOST_STATUS_EXPIRED = "expired"
BOOST_STATUS_CANCELLED = "cancelled"
BOOST_STATUS_EXHAUSTED = "exhausted"
BOOST_TERMINAL_STATUSES = {BOOST_STATUS_EXPIRED, BOOST_STATUS_CANCELLED, BOOST_STATUS_EXHAUSTED}

SOURCE_SYSTEM = "system"

# Ledger rows key workspace-wide usage under an empty namespace so the primary key stays non-null.
WORKSPACE_SCOPE = ""

# JSONB on Postgres, plain JSON elsewhere (local SQLite runs).
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class WorkspacePackageAssignment(Base):
    __tablename__ = "workspace_package_assignments"
    __table_args__ = (
        Index("ix_workspace_package_assignments_workspace_status", "workspace_id", "status"),
        Index("ix_workspace_package_assignments_namespace", "workspace_id", "namespace_id"),
    )

    # Subscription rows are never deleted so the assignment history stays auditable.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String, index=True)
    # Set when the grant belongs to one namespace inside the workspace.
    namespace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    package_code: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=ASSIGNMENT_STATUS_ACTIVE, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Monthly billing cycles start on this instant; cycle-bound boosts end with the cycle.
    billing_cycle_anchor: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(String, default=SOURCE_SYSTEM, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Boost(Base):
    __tablename__ = "boosts"
    __table_args__ = (
        CheckConstraint("consumed_quantity >= 0", name="ck_boosts_consumed_non_negative"),
        CheckConstraint(
            "limit_value IS NULL OR consumed_quantity <= limit_value",
            name="ck_boosts_consumed_within_limit",
        ),
        Index("ix_boosts_workspace_feature", "workspace_id", "feature_code"),
        Index("ix_boosts_namespace_feature", "workspace_id", "namespace_id", "feature_code"),
    )

    # Direct per-workspace grants that bypass packages.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False)
    namespace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    feature_code: Mapped[str] = mapped_column(String, nullable=False)
    boost_type: Mapped[str] = mapped_column(String, nullable=False)
    duration_type: Mapped[str] = mapped_column(String, default=BOOST_DURATION_PERMANENT, nullable=False)
    limit_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    consumed_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Stored status may lag behind expiry; read paths derive the effective status.
    status: Mapped[str] = mapped_column(String, default=BOOST_STATUS_ACTIVE, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(String, default=SOURCE_SYSTEM, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # Cumulative usage per workspace/namespace/feature/period for fixed (none or monthly) periods.
    workspace_id: Mapped[str] = mapped_column(String, primary_key=True)
    namespace_id: Mapped[str] = mapped_column(String, primary_key=True, default=WORKSPACE_SCOPE)
    feature_code: Mapped[str] = mapped_column(String, primary_key=True)
    period_key: Mapped[str] = mapped_column(String, primary_key=True)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_scope_recorded", "workspace_id", "namespace_id", "feature_code", "recorded_at"),
    )

    # Raw timestamped usage for sliding-window features.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False)
    namespace_id: Mapped[str] = mapped_column(String, default=WORKSPACE_SCOPE, nullable=False)
    feature_code: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)


class EntitlementLog(Base):
    __tablename__ = "entitlement_logs"
    __table_args__ = (
        Index("ix_entitlement_logs_workspace_occurred", "workspace_id", "occurred_at"),
    )

    # Append-only trail of every engine event for audit and downstream delivery.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False)
    feature_code: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    source: Mapped[str] = mapped_column(String, default=SOURCE_SYSTEM, nullable=False)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UsageAlertHistory(Base):
    __tablename__ = "usage_alert_history"
    __table_args__ = (
        # At most one open alert per workspace, feature and threshold.
        Index(
            "uq_usage_alert_history_open",
            "workspace_id",
            "feature_code",
            "threshold",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
        Index("ix_usage_alert_history_workspace_created", "workspace_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String, nullable=False)
    feature_code: Mapped[str] = mapped_column(String, nullable=False)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    notified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
