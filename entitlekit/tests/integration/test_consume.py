from __future__ import annotations

import pytest
from sqlalchemy import func, select

from entitlekit.core.errors import ConcurrencyConflict
from entitlekit.domain.models import EntitlementLog
from entitlekit.domain.results import REASON_LIMIT_EXCEEDED, allowed
from entitlekit.services import events


@pytest.mark.asyncio
async def test_consume_records_until_limit(session, resolver, grants, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    for expected_used in range(10):
        result = await resolver.consume(session, workspace_id, "bio.pages")
        assert result == allowed(10, expected_used, "bio.pages")

    blocked = await resolver.consume(session, workspace_id, "bio.pages")
    assert blocked.allowed is False
    assert blocked.reason == REASON_LIMIT_EXCEEDED
    assert (await resolver.resolve(session, workspace_id, "bio.pages", 1)).used == 10


@pytest.mark.asyncio
async def test_consume_spends_boost_before_package_quota(session, resolver, grants, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await grants.grant_boost(session, workspace_id, "bio.pages", boost_type="add_limit", limit_value=5)
    assert (await resolver.consume(session, workspace_id, "bio.pages", 12)).allowed is True
    # Five units came from the boost, seven from the package allowance.
    assert await resolver.resolve(session, workspace_id, "bio.pages") == allowed(10, 7, "bio.pages")
    assert (await resolver.consume(session, workspace_id, "bio.pages", 4)).allowed is False
    assert (await resolver.consume(session, workspace_id, "bio.pages", 3)).allowed is True


@pytest.mark.asyncio
async def test_consume_enforces_pool_caps(session, resolver, grants, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    assert (await resolver.consume(session, workspace_id, "ai.credits.images", 25)).allowed is True
    blocked = await resolver.consume(session, workspace_id, "ai.credits.images")
    assert blocked.allowed is False
    assert blocked.feature_code == "ai.credits.images"
    assert (await resolver.resolve(session, workspace_id, "ai.credits")).used == 25


@pytest.mark.asyncio
async def test_consume_retries_once_then_denies_on_lost_race(
    session, resolver, grants, workspace_id, monkeypatch
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 10)

    calls: list[int] = []

    async def stale_resolve(session, workspace_id, feature_code, requested_quantity=1, *, namespace_id=None):
        # Simulates a decision made before a concurrent writer took the last unit.
        calls.append(requested_quantity)
        return allowed(10, 9, feature_code)

    monkeypatch.setattr(resolver, "resolve", stale_resolve)
    result = await resolver.consume(session, workspace_id, "bio.pages")

    assert len(calls) == 2
    assert result.allowed is False
    assert result.reason == REASON_LIMIT_EXCEEDED
    monkeypatch.undo()
    assert (await resolver.resolve(session, workspace_id, "bio.pages", 1)).used == 10


@pytest.mark.asyncio
async def test_consume_recovers_when_retry_resolves_fresh_state(
    session, resolver, grants, workspace_id, monkeypatch
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 10)
    real_resolve = resolver.resolve
    calls: list[str] = []

    async def first_call_stale(session, workspace_id, feature_code, requested_quantity=1, *, namespace_id=None):
        calls.append(feature_code)
        if len(calls) == 1:
            return allowed(10, 9, feature_code)
        return await real_resolve(session, workspace_id, feature_code, requested_quantity, namespace_id=namespace_id)

    monkeypatch.setattr(resolver, "resolve", first_call_stale)
    result = await resolver.consume(session, workspace_id, "bio.pages")
    assert len(calls) == 2
    assert result.allowed is False
    assert (result.limit, result.used) == (10, 10)


@pytest.mark.asyncio
async def test_limit_reached_event_fires_once_when_headroom_hits_zero(
    session, resolver, grants, workspace_id, recorded_events
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.consume(session, workspace_id, "bio.pages", 9)
    assert events.QUOTA_LIMIT_REACHED not in [e.event_type for e in recorded_events]

    await resolver.consume(session, workspace_id, "bio.pages", 1)
    reached = [e for e in recorded_events if e.event_type == events.QUOTA_LIMIT_REACHED]
    assert len(reached) == 1
    assert reached[0].feature_code == "bio.pages"
    assert reached[0].payload["used"] == 10

    await resolver.record_usage(session, workspace_id, "bio.pages", 1)
    reached = [e for e in recorded_events if e.event_type == events.QUOTA_LIMIT_REACHED]
    assert len(reached) == 1


@pytest.mark.asyncio
async def test_consume_on_boolean_feature_records_nothing(session, resolver, grants, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    result = await resolver.consume(session, workspace_id, "bio.enabled", 3)
    assert result.allowed is True
    assert result.limit is None


@pytest.mark.asyncio
async def test_lost_race_does_not_announce_unwound_boost_exhaustion(
    session, resolver, grants, workspace_id, recorded_events, monkeypatch
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    boost = await grants.grant_boost(session, workspace_id, "bio.pages", boost_type="add_limit", limit_value=5)
    real_increment = resolver.ledger.increment
    calls: list[str] = []

    async def conflict_once(*args, **kwargs):
        calls.append(args[2])
        if len(calls) == 1:
            raise ConcurrencyConflict("concurrent writer took the headroom")
        return await real_increment(*args, **kwargs)

    monkeypatch.setattr(resolver.ledger, "increment", conflict_once)
    result = await resolver.consume(session, workspace_id, "bio.pages", 7)
    monkeypatch.undo()

    assert result.allowed is True
    assert calls == ["bio.pages", "bio.pages"]
    exhausted = [e for e in recorded_events if e.event_type == events.BOOST_EXHAUSTED]
    assert len(exhausted) == 1
    assert exhausted[0].payload["boost_id"] == boost.id
    logged = await session.scalar(
        select(func.count(EntitlementLog.id)).where(
            EntitlementLog.workspace_id == workspace_id,
            EntitlementLog.event_type == events.BOOST_EXHAUSTED,
        )
    )
    assert logged == 1
    assert (await grants.get_boost(session, boost.id)).consumed_quantity == 5
    assert await resolver.resolve(session, workspace_id, "bio.pages") == allowed(10, 2, "bio.pages")


@pytest.mark.asyncio
async def test_denied_consume_keeps_callers_staged_writes(
    session, session_factory, resolver, grants, workspace_id, recorded_events, monkeypatch
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 10)
    staged = await grants.grant_boost(session, workspace_id, "support.priority", boost_type="enable", commit=False)

    async def stale_resolve(session, workspace_id, feature_code, requested_quantity=1, *, namespace_id=None):
        return allowed(10, 9, feature_code)

    monkeypatch.setattr(resolver, "resolve", stale_resolve)
    result = await resolver.consume(session, workspace_id, "bio.pages")
    monkeypatch.undo()

    assert result.allowed is False
    assert events.BOOST_GRANTED not in [e.event_type for e in recorded_events]

    await resolver.event_emitter.commit(session)
    assert recorded_events[-1].event_type == events.BOOST_GRANTED
    async with session_factory() as other:
        stored = await grants.list_boosts(other, workspace_id)
        usage = await resolver.resolve(other, workspace_id, "bio.pages")
    assert [b.id for b in stored] == [staged.id]
    assert usage.used == 10
