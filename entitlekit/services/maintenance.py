from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Literal

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.core.clock import as_utc, utc_now
from entitlekit.core.config import get_settings
from entitlekit.domain.models import (
    BOOST_DURATION_CYCLE_BOUND,
    BOOST_DURATION_PERMANENT,
    BOOST_STATUS_EXPIRED,
    BOOST_TERMINAL_STATUSES,
    SOURCE_SYSTEM,
    Boost,
)
from entitlekit.persistence.dialects import supports_row_locks
from entitlekit.persistence.guards import workspace_predicate
from entitlekit.persistence.repos.grants import WorkspaceGrantStore
from entitlekit.persistence.repos.usage import delete_usage_events_before
from entitlekit.services import events
from entitlekit.services.events import EventEmitter


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "sweep_expired_boosts",
    "prune_usage_events",
]


async def sweep_expired_boosts(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    event_emitter: EventEmitter | None = None,
) -> int:
    # Persist "expired" for reporting; read paths already treat these boosts as expired.
    current = as_utc(now) or utc_now()
    limit = max(1, int(batch_size or get_settings().boost_sweep_batch_size))
    emitter = event_emitter or EventEmitter()
    stmt = (
        select(Boost)
        .where(
            Boost.status.not_in(sorted(BOOST_TERMINAL_STATUSES)),
            Boost.expires_at.is_not(None),
            Boost.expires_at < current,
        )
        .order_by(Boost.expires_at, Boost.id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    if supports_row_locks(session):
        # Parallel sweepers split the backlog instead of blocking on each other.
        stmt = stmt.with_for_update(skip_locked=True)
    boosts = list((await session.execute(stmt)).scalars().all())
    for boost in boosts:
        boost.status = BOOST_STATUS_EXPIRED
        await emitter.emit(
            session,
            events.BOOST_EXPIRED,
            workspace_id=boost.workspace_id,
            feature_code=boost.feature_code,
            payload={
                "boost_id": boost.id,
                "expires_at": as_utc(boost.expires_at),
                "consumed_quantity": boost.consumed_quantity,
            },
            occurred_at=current,
        )
    await emitter.commit(session)
    if boosts:
        logger.info("boost_sweep_expired count=%s batch_size=%s", len(boosts), limit)
    return len(boosts)


async def expire_cycle_bound_boosts(
    session: AsyncSession,
    workspace_id: str,
    *,
    cycle_end: datetime | None = None,
    grant_store: WorkspaceGrantStore | None = None,
    source: str = SOURCE_SYSTEM,
    event_emitter: EventEmitter | None = None,
) -> int:
    """Close out a workspace's boosts at a billing-cycle boundary.

    ``cycle_end`` is the boundary just crossed. When omitted it is the start
    of the current billing cycle, derived from the base package's
    ``billing_cycle_anchor`` through ``grant_store``; workspaces without a base
    package are skipped. Cycle-bound boosts that started before the boundary
    and carry no end of their own expire there. Boosts whose own expiry falls
    at or before the boundary are persisted as expired. Later expiries are
    never shortened, and permanent boosts are untouched.
    """
    emitter = event_emitter or (grant_store.event_emitter if grant_store is not None else EventEmitter())
    boundary = as_utc(cycle_end)
    if boundary is None:
        if grant_store is None:
            raise ValueError("cycle_end or grant_store is required")
        cycle = await grant_store.current_billing_cycle(session, workspace_id)
        if cycle is None:
            logger.info("cycle_reset_skipped workspace_id=%s reason=no_base_package", workspace_id)
            return 0
        boundary = cycle[0]

    result = await session.execute(
        select(Boost)
        .where(
            workspace_predicate(Boost, workspace_id),
            Boost.status.not_in(sorted(BOOST_TERMINAL_STATUSES)),
            or_(
                and_(
                    Boost.duration_type == BOOST_DURATION_CYCLE_BOUND,
                    Boost.expires_at.is_(None),
                    Boost.starts_at < boundary,
                ),
                and_(
                    Boost.duration_type != BOOST_DURATION_PERMANENT,
                    Boost.expires_at.is_not(None),
                    Boost.expires_at <= boundary,
                ),
            ),
        )
        .order_by(Boost.id)
        .execution_options(populate_existing=True)
    )
    boosts = list(result.scalars().all())
    for boost in boosts:
        boost.status = BOOST_STATUS_EXPIRED
        if boost.expires_at is None:
            boost.expires_at = boundary
        await emitter.emit(
            session,
            events.BOOST_EXPIRED,
            workspace_id=boost.workspace_id,
            feature_code=boost.feature_code,
            payload={
                "boost_id": boost.id,
                "reason": "billing_cycle_ended",
                "duration_type": boost.duration_type,
                "cycle_end": boundary,
                "expires_at": as_utc(boost.expires_at),
            },
            source=source,
            occurred_at=boundary,
        )
    await emitter.commit(session)
    if boosts:
        logger.info("cycle_bound_boosts_expired workspace_id=%s count=%s", workspace_id, len(boosts))
    return len(boosts)


async def prune_usage_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove raw rolling-window events beyond the retention window.
    settings = get_settings()
    cutoff = (as_utc(now) or utc_now()) - timedelta(days=settings.usage_event_retention_days)
    deleted = await delete_usage_events_before(session, before=cutoff)
    await session.commit()
    return deleted


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    if task == "sweep_expired_boosts":
        return await sweep_expired_boosts(session)
    if task == "prune_usage_events":
        return await prune_usage_events(session)
    raise ValueError(f"unknown maintenance task: {task}")
