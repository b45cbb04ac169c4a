from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.core.config import get_settings
from entitlekit.persistence.guards import normalize_namespace_id
from entitlekit.services.resolver import EntitlementResolver


ALERT_THRESHOLD_WARNING = 80
ALERT_THRESHOLD_CRITICAL = 90
ALERT_THRESHOLD_LIMIT = 100
ALERT_THRESHOLDS = (ALERT_THRESHOLD_LIMIT, ALERT_THRESHOLD_CRITICAL, ALERT_THRESHOLD_WARNING)


@dataclass(frozen=True)
class UsageSummaryRow:
    # One feature's standing for dashboards and alerting jobs.
    feature_code: str
    name: str
    category: str
    type: str
    allowed: bool
    unlimited: bool
    limit: int | None
    used: int | None
    remaining: int | None
    percentage: float | None
    near_limit: bool
    alert_threshold: int | None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def alert_threshold(percentage: float | None) -> int | None:
    # Highest band crossed wins; below 80% there is nothing to alert on.
    if percentage is None:
        return None
    for threshold in ALERT_THRESHOLDS:
        if percentage >= threshold:
            return threshold
    return None


async def get_usage_summary(
    session: AsyncSession,
    resolver: EntitlementResolver,
    workspace_id: str,
    *,
    near_limit_ratio: float | None = None,
    namespace_id: str | None = None,
) -> dict[str, list[UsageSummaryRow]]:
    # Resolve every active feature and group rows by catalog category.
    ratio = near_limit_ratio if near_limit_ratio is not None else get_settings().near_limit_ratio
    grouped: dict[str, list[UsageSummaryRow]] = {}
    for feature in resolver.catalog.features.active():
        result = await resolver.resolve(session, workspace_id, feature.code, namespace_id=namespace_id)
        percentage = result.usage_percentage()
        row = UsageSummaryRow(
            feature_code=feature.code,
            name=feature.display_name,
            category=feature.category,
            type=feature.type,
            allowed=result.allowed,
            unlimited=result.unlimited,
            limit=result.limit,
            used=result.used,
            remaining=result.remaining,
            percentage=percentage,
            near_limit=result.is_near_limit(ratio),
            alert_threshold=alert_threshold(percentage) if result.limit else None,
            reason=result.reason,
        )
        grouped.setdefault(feature.category, []).append(row)
    return grouped


async def get_namespace_usage_summary(
    session: AsyncSession,
    resolver: EntitlementResolver,
    workspace_id: str,
    namespace_id: str,
    *,
    near_limit_ratio: float | None = None,
) -> dict[str, list[UsageSummaryRow]]:
    # Same rows as the workspace summary, seen from one namespace (own grants first, else the workspace pool).
    if normalize_namespace_id(namespace_id) is None:
        raise ValueError("namespace_id is required")
    return await get_usage_summary(
        session, resolver, workspace_id, near_limit_ratio=near_limit_ratio, namespace_id=namespace_id
    )


async def usage_alerts(
    session: AsyncSession,
    resolver: EntitlementResolver,
    workspace_id: str,
) -> list[UsageSummaryRow]:
    # Quota features that crossed an alert band; zero-limit features are not alertable.
    summary = await get_usage_summary(session, resolver, workspace_id)
    return [
        row
        for rows in summary.values()
        for row in rows
        if row.type == "limit" and row.alert_threshold is not None
    ]
