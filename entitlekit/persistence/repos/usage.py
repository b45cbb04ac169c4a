from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.core.clock import as_utc, utc_now
from entitlekit.core.errors import ConcurrencyConflict
from entitlekit.domain.models import WORKSPACE_SCOPE, UsageCounter, UsageEvent
from entitlekit.persistence.dialects import insert_ignoring_conflicts, supports_row_locks
from entitlekit.persistence.guards import normalize_namespace_id, require_workspace_id
from entitlekit.services.periods import QuotaPeriod


logger = logging.getLogger(__name__)


def ledger_scope(namespace_id: str | None) -> str:
    return normalize_namespace_id(namespace_id) or WORKSPACE_SCOPE


def _counter_key(workspace_id: str, scope: str, feature_code: str, period_key: str) -> list[Any]:
    return [
        UsageCounter.workspace_id == workspace_id,
        UsageCounter.namespace_id == scope,
        UsageCounter.feature_code == feature_code,
        UsageCounter.period_key == period_key,
    ]


def _window_filter(workspace_id: str, scope: str, feature_code: str, period: QuotaPeriod) -> list[Any]:
    return [
        UsageEvent.workspace_id == workspace_id,
        UsageEvent.namespace_id == scope,
        UsageEvent.feature_code == feature_code,
        UsageEvent.recorded_at > as_utc(period.start),
        UsageEvent.recorded_at <= as_utc(period.end),
    ]


class UsageLedger:
    """Per-period usage storage.

    Fixed periods (``none``/``monthly``) keep one cumulative counter row per
    (workspace, namespace, feature, period key). Rolling windows append
    timestamped events and range-sum them; a counter row keyed by the window
    shape acts as the row lock that serialises capped writers.

    Workspace-wide usage is the default scope; pass ``namespace_id`` to count
    against one namespace instead. The ledger never commits; callers own the
    unit of work.
    """

    async def get(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        period: QuotaPeriod,
        *,
        namespace_id: str | None = None,
    ) -> int:
        workspace_id = require_workspace_id(workspace_id)
        scope = ledger_scope(namespace_id)
        if period.is_rolling:
            return await self._window_sum(session, workspace_id, scope, feature_code, period)
        result = await session.execute(
            select(UsageCounter.used).where(*_counter_key(workspace_id, scope, feature_code, period.key))
        )
        return int(result.scalar_one_or_none() or 0)

    async def increment(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        period: QuotaPeriod,
        quantity: int,
        *,
        cap: int | None = None,
        metadata: dict[str, Any] | None = None,
        namespace_id: str | None = None,
    ) -> int:
        # Return the new period total; raise ConcurrencyConflict when the cap would be crossed.
        workspace_id = require_workspace_id(workspace_id)
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        scope = ledger_scope(namespace_id)
        await self._ensure_counter(session, workspace_id, scope, feature_code, period.key)
        if period.is_rolling:
            return await self._append_event(
                session, workspace_id, scope, feature_code, period, quantity, cap=cap, metadata=metadata
            )

        stmt = (
            update(UsageCounter)
            .where(*_counter_key(workspace_id, scope, feature_code, period.key))
            .values(used=UsageCounter.used + quantity, updated_at=utc_now())
            .returning(UsageCounter.used)
            .execution_options(synchronize_session=False)
        )
        if cap is not None:
            # Single conditional write: the check and the increment cannot interleave.
            stmt = stmt.where(UsageCounter.used + quantity <= cap)
        result = await session.execute(stmt)
        new_total = result.scalar_one_or_none()
        if new_total is None:
            raise ConcurrencyConflict(
                f"usage increment would exceed cap workspace_id={workspace_id} feature_code={feature_code}"
            )
        return int(new_total)

    async def reset(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        period: QuotaPeriod,
        *,
        namespace_id: str | None = None,
    ) -> int:
        # Operator action: zero the period and report how much usage was cleared.
        workspace_id = require_workspace_id(workspace_id)
        scope = ledger_scope(namespace_id)
        if period.is_rolling:
            cleared = await self._window_sum(session, workspace_id, scope, feature_code, period)
            await session.execute(delete(UsageEvent).where(*_window_filter(workspace_id, scope, feature_code, period)))
            return cleared

        key = _counter_key(workspace_id, scope, feature_code, period.key)
        result = await session.execute(select(UsageCounter.used).where(*key))
        cleared = int(result.scalar_one_or_none() or 0)
        await session.execute(
            update(UsageCounter)
            .where(*key)
            .values(used=0, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return cleared

    async def _ensure_counter(
        self,
        session: AsyncSession,
        workspace_id: str,
        scope: str,
        feature_code: str,
        period_key: str,
    ) -> None:
        # Lazily create the period row; concurrent creators collapse onto one row.
        await session.execute(
            insert_ignoring_conflicts(
                session,
                UsageCounter,
                {
                    "workspace_id": workspace_id,
                    "namespace_id": scope,
                    "feature_code": feature_code,
                    "period_key": period_key,
                    "used": 0,
                },
                index_elements=["workspace_id", "namespace_id", "feature_code", "period_key"],
            )
        )

    async def _append_event(
        self,
        session: AsyncSession,
        workspace_id: str,
        scope: str,
        feature_code: str,
        period: QuotaPeriod,
        quantity: int,
        *,
        cap: int | None,
        metadata: dict[str, Any] | None,
    ) -> int:
        # Lock the window's guard row so capped writers for the same scope run one at a time.
        guard = select(UsageCounter.used).where(*_counter_key(workspace_id, scope, feature_code, period.key))
        if supports_row_locks(session):
            guard = guard.with_for_update()
        await session.execute(guard)

        used = await self._window_sum(session, workspace_id, scope, feature_code, period)
        if cap is not None and used + quantity > cap:
            raise ConcurrencyConflict(
                f"usage event would exceed cap workspace_id={workspace_id} feature_code={feature_code}"
            )
        recorded_at = as_utc(period.end) or utc_now()
        session.add(
            UsageEvent(
                workspace_id=workspace_id,
                namespace_id=scope,
                feature_code=feature_code,
                quantity=quantity,
                recorded_at=recorded_at,
                metadata_json=metadata,
            )
        )
        await session.flush()
        return used + quantity

    async def _window_sum(
        self,
        session: AsyncSession,
        workspace_id: str,
        scope: str,
        feature_code: str,
        period: QuotaPeriod,
    ) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(UsageEvent.quantity), 0)).where(
                *_window_filter(workspace_id, scope, feature_code, period)
            )
        )
        return int(result.scalar_one() or 0)


async def delete_usage_events_before(session: AsyncSession, *, before: datetime) -> int:
    # Drop raw events that no rolling window can reach any more.
    result = await session.execute(delete(UsageEvent).where(UsageEvent.recorded_at < as_utc(before)))
    deleted = result.rowcount or 0
    if deleted:
        logger.info("usage_events_pruned deleted=%s before=%s", deleted, before.isoformat())
    return deleted
