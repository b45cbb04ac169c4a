from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from entitlekit.domain.models import UsageAlertHistory
from entitlekit.services import events
from entitlekit.services.usage_alerts import UsageAlertService


@pytest.fixture
def alerts(resolver) -> UsageAlertService:
    return UsageAlertService(resolver)


async def _alert_rows(session, workspace_id: str) -> int:
    return await session.scalar(
        select(func.count(UsageAlertHistory.id)).where(UsageAlertHistory.workspace_id == workspace_id)
    )


@pytest.mark.asyncio
async def test_alert_sent_when_usage_crosses_eighty_percent(
    session, resolver, grants, alerts, workspace_id, recorded_events
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 7)
    below = await alerts.check_feature_usage(session, workspace_id, "bio.pages")
    assert below.alert_sent is False
    assert below.threshold is None

    await resolver.record_usage(session, workspace_id, "bio.pages", 1)
    outcome = await alerts.check_feature_usage(session, workspace_id, "bio.pages")

    assert outcome.alert_sent is True
    assert outcome.threshold == 80
    assert outcome.percentage == pytest.approx(80.0)
    sent = [e for e in recorded_events if e.event_type == events.USAGE_ALERT_SENT]
    assert len(sent) == 1
    assert sent[0].feature_code == "bio.pages"
    assert sent[0].payload["threshold"] == 80
    assert (sent[0].payload["used"], sent[0].payload["limit"]) == (8, 10)
    assert await alerts.has_active_alert(session, workspace_id, "bio.pages", 80)


@pytest.mark.asyncio
async def test_repeated_checks_do_not_resend(session, resolver, grants, alerts, workspace_id, recorded_events) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 8)
    assert (await alerts.check_feature_usage(session, workspace_id, "bio.pages")).alert_sent is True

    again = await alerts.check_feature_usage(session, workspace_id, "bio.pages")
    assert again.alert_sent is False
    assert again.threshold == 80
    assert await _alert_rows(session, workspace_id) == 1
    assert [e.event_type for e in recorded_events].count(events.USAGE_ALERT_SENT) == 1


@pytest.mark.asyncio
async def test_alerts_escalate_through_thresholds(session, resolver, grants, alerts, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    sent: list[int] = []
    for quantity in (8, 1, 1):
        await resolver.record_usage(session, workspace_id, "bio.pages", quantity)
        outcome = await alerts.check_feature_usage(session, workspace_id, "bio.pages")
        assert outcome.alert_sent is True
        sent.append(outcome.threshold)

    assert sent == [80, 90, 100]
    active = await alerts.active_alerts(session, workspace_id)
    assert [a.threshold for a in active] == [100, 90, 80]


@pytest.mark.asyncio
async def test_alerts_resolve_when_usage_drops(
    session, resolver, grants, alerts, workspace_id, recorded_events
) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 9)
    await alerts.check_feature_usage(session, workspace_id, "bio.pages")
    assert await alerts.has_active_alert(session, workspace_id, "bio.pages", 90)

    await resolver.reset_usage(session, workspace_id, "bio.pages")
    outcome = await alerts.check_feature_usage(session, workspace_id, "bio.pages")

    assert outcome.resolved is True
    assert outcome.percentage == pytest.approx(0.0)
    assert await alerts.active_alerts(session, workspace_id) == []
    assert recorded_events[-1].event_type == events.USAGE_ALERT_RESOLVED
    assert recorded_events[-1].payload == {"resolved": 1}
    # Resolved rows stay as history and the threshold can fire again later.
    assert await _alert_rows(session, workspace_id) == 1
    await resolver.record_usage(session, workspace_id, "bio.pages", 9)
    assert (await alerts.check_feature_usage(session, workspace_id, "bio.pages")).alert_sent is True
    assert await _alert_rows(session, workspace_id) == 2


@pytest.mark.asyncio
async def test_unlimited_features_clear_open_alerts(session, resolver, grants, alerts, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 8)
    await alerts.check_feature_usage(session, workspace_id, "bio.pages")

    await grants.assign_package(session, workspace_id, "unlimited-pages")
    outcome = await alerts.check_feature_usage(session, workspace_id, "bio.pages")

    assert outcome.resolved is True
    assert outcome.alert_sent is False
    assert outcome.percentage is None
    assert await alerts.active_alerts(session, workspace_id) == []


@pytest.mark.asyncio
async def test_manual_resolution(session, resolver, grants, alerts, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 8)
    await alerts.check_feature_usage(session, workspace_id, "bio.pages")
    (alert,) = await alerts.active_alerts(session, workspace_id)

    assert await alerts.resolve_alert(session, alert.id) is True
    assert await alerts.resolve_alert(session, alert.id) is False
    assert await alerts.resolve_alert(session, 999_999) is False
    assert await alerts.has_active_alert(session, workspace_id, "bio.pages", 80) is False


@pytest.mark.asyncio
async def test_check_all_workspaces_reports_totals(session, resolver, grants, alerts, workspace_id) -> None:
    quiet_workspace = f"ws-{uuid4().hex}"
    await grants.assign_package(session, workspace_id, "starter")
    await grants.assign_package(session, quiet_workspace, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 8)

    stats = await alerts.check_all_workspaces(session)
    assert stats == {"checked": 2, "alerts_sent": 1, "alerts_resolved": 0}

    outcome = await alerts.check_workspace(session, workspace_id)
    assert outcome.alerts_sent == 0
    assert outcome.details == []
    assert await alerts.active_alerts(session, quiet_workspace) == []


@pytest.mark.asyncio
async def test_alert_history_window(session, resolver, grants, alerts, clock, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 10)
    await alerts.check_feature_usage(session, workspace_id, "bio.pages")

    history = await alerts.alert_history(session, workspace_id)
    assert [a.threshold for a in history] == [100]
    assert history[0].metadata_json["used"] == 10

    clock.advance(days=31)
    assert await alerts.alert_history(session, workspace_id) == []
    assert len(await alerts.alert_history(session, workspace_id, days=60)) == 1
