from __future__ import annotations

import pytest

from entitlekit.domain.results import REASON_LIMIT_EXCEEDED, REASON_NOT_ENTITLED
from entitlekit.services.usage_summary import get_usage_summary, usage_alerts


@pytest.mark.asyncio
async def test_summary_groups_active_features_by_category(session, resolver, grants, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    summary = await get_usage_summary(session, resolver, workspace_id)

    assert set(summary) == {"bio", "ai", "api", "storage", "support"}
    assert [row.feature_code for row in summary["bio"]] == ["bio.enabled", "bio.pages"]
    codes = {row.feature_code for rows in summary.values() for row in rows}
    assert "legacy.widgets" not in codes

    pages = summary["bio"][1]
    assert (pages.limit, pages.used, pages.remaining) == (10, 0, 10)
    assert pages.percentage == 0.0
    assert pages.alert_threshold is None

    storage = summary["storage"][0]
    assert storage.allowed is False
    assert storage.reason == REASON_NOT_ENTITLED
    assert storage.to_dict()["feature_code"] == "storage.assets"


@pytest.mark.asyncio
async def test_near_limit_and_alert_bands(session, resolver, grants, workspace_id) -> None:
    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "bio.pages", 8)
    await resolver.record_usage(session, workspace_id, "ai.credits.images", 25)

    summary = await get_usage_summary(session, resolver, workspace_id)
    rows = {row.feature_code: row for group in summary.values() for row in group}

    assert rows["bio.pages"].near_limit is True
    assert rows["bio.pages"].alert_threshold == 80
    assert rows["ai.credits.images"].alert_threshold == 100
    assert rows["ai.credits.images"].reason == REASON_LIMIT_EXCEEDED
    assert rows["ai.credits"].used == 25
    assert rows["ai.credits"].near_limit is False

    relaxed = await get_usage_summary(session, resolver, workspace_id, near_limit_ratio=0.9)
    relaxed_pages = [row for row in relaxed["bio"] if row.feature_code == "bio.pages"][0]
    assert relaxed_pages.near_limit is False


@pytest.mark.asyncio
async def test_usage_alerts_only_report_quota_features(session, resolver, grants, workspace_id) -> None:
    assert await usage_alerts(session, resolver, workspace_id) == []

    await grants.assign_package(session, workspace_id, "starter")
    await resolver.record_usage(session, workspace_id, "api.requests", 5)
    await resolver.record_usage(session, workspace_id, "bio.pages", 9)

    alerts = {row.feature_code: row.alert_threshold for row in await usage_alerts(session, resolver, workspace_id)}
    assert alerts == {"api.requests": 100, "bio.pages": 90}
