from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from entitlekit.core.errors import ConcurrencyConflict
from entitlekit.domain.catalog import ResetPolicy
from entitlekit.domain.models import UsageCounter, UsageEvent
from entitlekit.persistence.repos.usage import UsageLedger, delete_usage_events_before
from entitlekit.services.periods import current_period


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_counter_increments_are_cumulative(session, workspace_id) -> None:
    ledger = UsageLedger()
    period = current_period(ResetPolicy.monthly(), NOW)
    assert await ledger.get(session, workspace_id, "ai.credits", period) == 0
    assert await ledger.increment(session, workspace_id, "ai.credits", period, 3) == 3
    assert await ledger.increment(session, workspace_id, "ai.credits", period, 4) == 7
    await session.commit()

    rows = (await session.execute(select(UsageCounter).where(UsageCounter.workspace_id == workspace_id))).scalars().all()
    assert [(row.period_key, row.used) for row in rows] == [("2026-03", 7)]


@pytest.mark.asyncio
async def test_capped_counter_increment_conflicts_without_writing(session, workspace_id) -> None:
    ledger = UsageLedger()
    period = current_period(ResetPolicy.none(), NOW)
    await ledger.increment(session, workspace_id, "bio.pages", period, 9, cap=10)
    with pytest.raises(ConcurrencyConflict):
        await ledger.increment(session, workspace_id, "bio.pages", period, 2, cap=10)
    assert await ledger.get(session, workspace_id, "bio.pages", period) == 9
    assert await ledger.increment(session, workspace_id, "bio.pages", period, 1, cap=10) == 10


@pytest.mark.asyncio
async def test_rolling_events_sum_inside_window_only(session, workspace_id) -> None:
    ledger = UsageLedger()
    policy = ResetPolicy.rolling(7)
    await ledger.increment(session, workspace_id, "api.requests", current_period(policy, NOW), 2)
    later = NOW + timedelta(days=5)
    assert await ledger.increment(session, workspace_id, "api.requests", current_period(policy, later), 3) == 5

    after_window = NOW + timedelta(days=8)
    assert await ledger.get(session, workspace_id, "api.requests", current_period(policy, after_window)) == 3

    count = (await session.execute(select(func.count()).select_from(UsageEvent))).scalar_one()
    assert count == 2


@pytest.mark.asyncio
async def test_capped_rolling_increment_conflicts(session, workspace_id) -> None:
    ledger = UsageLedger()
    period = current_period(ResetPolicy.rolling(30), NOW)
    await ledger.increment(session, workspace_id, "api.requests", period, 4, cap=5)
    with pytest.raises(ConcurrencyConflict):
        await ledger.increment(session, workspace_id, "api.requests", period, 2, cap=5)
    assert await ledger.get(session, workspace_id, "api.requests", period) == 4


@pytest.mark.asyncio
async def test_reset_clears_current_period(session, workspace_id) -> None:
    ledger = UsageLedger()
    counter_period = current_period(ResetPolicy.none(), NOW)
    rolling_period = current_period(ResetPolicy.rolling(30), NOW)
    await ledger.increment(session, workspace_id, "bio.pages", counter_period, 6)
    await ledger.increment(session, workspace_id, "api.requests", rolling_period, 4)

    assert await ledger.reset(session, workspace_id, "bio.pages", counter_period) == 6
    assert await ledger.reset(session, workspace_id, "api.requests", rolling_period) == 4
    assert await ledger.get(session, workspace_id, "bio.pages", counter_period) == 0
    assert await ledger.get(session, workspace_id, "api.requests", rolling_period) == 0


@pytest.mark.asyncio
async def test_delete_usage_events_before_cutoff(session, workspace_id) -> None:
    ledger = UsageLedger()
    policy = ResetPolicy.rolling(30)
    await ledger.increment(session, workspace_id, "api.requests", current_period(policy, NOW), 1)
    await ledger.increment(
        session, workspace_id, "api.requests", current_period(policy, NOW + timedelta(days=10)), 1
    )
    deleted = await delete_usage_events_before(session, before=NOW + timedelta(days=1))
    assert deleted == 1


@pytest.mark.asyncio
async def test_increment_validates_input(session, workspace_id) -> None:
    ledger = UsageLedger()
    period = current_period(ResetPolicy.none(), NOW)
    with pytest.raises(ValueError):
        await ledger.increment(session, workspace_id, "bio.pages", period, 0)
    with pytest.raises(ValueError):
        await ledger.get(session, "", "bio.pages", period)
