from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.core.clock import TimeProvider
from entitlekit.domain.models import ASSIGNMENT_STATUS_ACTIVE, UsageAlertHistory, WorkspacePackageAssignment
from entitlekit.persistence.guards import require_workspace_id, workspace_predicate
from entitlekit.services import events
from entitlekit.services.events import EventEmitter
from entitlekit.services.resolver import EntitlementResolver
from entitlekit.services.usage_summary import alert_threshold


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureAlertCheck:
    feature_code: str
    percentage: float | None = None
    threshold: int | None = None
    alert_sent: bool = False
    resolved: bool = False


@dataclass(frozen=True)
class WorkspaceAlertCheck:
    workspace_id: str
    alerts_sent: int = 0
    alerts_resolved: int = 0
    details: list[FeatureAlertCheck] = field(default_factory=list)


class UsageAlertService:
    """Notifies once per threshold as quota usage climbs, and clears alerts when it falls.

    Each (workspace, feature, threshold) holds at most one open alert row, so
    repeated checks never re-send. Alerts resolve once usage drops below every
    threshold, or when the feature stops being metered (unlimited, not
    entitled, or a zero limit). Delivery goes through ``usage.alert_sent``
    events; listeners own the actual notification channel.
    """

    def __init__(
        self,
        resolver: EntitlementResolver,
        *,
        event_emitter: EventEmitter | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._resolver = resolver
        self._events = event_emitter or resolver.event_emitter
        self._now = time_provider or resolver.clock

    async def check_all_workspaces(self, session: AsyncSession) -> dict[str, int]:
        stats = {"checked": 0, "alerts_sent": 0, "alerts_resolved": 0}
        for workspace_id in await self._workspaces_with_packages(session):
            outcome = await self.check_workspace(session, workspace_id)
            stats["checked"] += 1
            stats["alerts_sent"] += outcome.alerts_sent
            stats["alerts_resolved"] += outcome.alerts_resolved
        logger.info(
            "usage_alerts_checked workspaces=%s alerts_sent=%s alerts_resolved=%s",
            stats["checked"],
            stats["alerts_sent"],
            stats["alerts_resolved"],
        )
        return stats

    async def check_workspace(
        self,
        session: AsyncSession,
        workspace_id: str,
        *,
        commit: bool = True,
    ) -> WorkspaceAlertCheck:
        workspace_id = require_workspace_id(workspace_id)
        sent = resolved = 0
        details: list[FeatureAlertCheck] = []
        for feature in self._resolver.catalog.features.active():
            if not feature.is_limit:
                continue
            outcome = await self.check_feature_usage(session, workspace_id, feature.code, commit=False)
            sent += int(outcome.alert_sent)
            resolved += int(outcome.resolved)
            if outcome.alert_sent or outcome.resolved:
                details.append(outcome)
        if commit:
            await self._events.commit(session)
        return WorkspaceAlertCheck(workspace_id, sent, resolved, details)

    async def check_feature_usage(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        *,
        commit: bool = True,
    ) -> FeatureAlertCheck:
        result = await self._resolver.resolve(session, workspace_id, feature_code)
        if result.unlimited or not result.limit:
            outcome = FeatureAlertCheck(
                feature_code,
                resolved=await self.resolve_all_for_feature(session, workspace_id, feature_code) > 0,
            )
        else:
            percentage = result.usage_percentage()
            threshold = alert_threshold(percentage)
            if threshold is None:
                outcome = FeatureAlertCheck(
                    feature_code,
                    percentage=percentage,
                    resolved=await self.resolve_all_for_feature(session, workspace_id, feature_code) > 0,
                )
            elif await self.has_active_alert(session, workspace_id, feature_code, threshold):
                outcome = FeatureAlertCheck(feature_code, percentage=percentage, threshold=threshold)
            else:
                sent = await self._send_alert(
                    session,
                    workspace_id,
                    feature_code,
                    threshold,
                    used=result.used or 0,
                    limit=result.limit,
                    percentage=percentage,
                )
                outcome = FeatureAlertCheck(feature_code, percentage, threshold, alert_sent=sent)
        if commit:
            await self._events.commit(session)
        return outcome

    async def has_active_alert(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        threshold: int,
    ) -> bool:
        result = await session.execute(
            select(UsageAlertHistory.id)
            .where(
                workspace_predicate(UsageAlertHistory, workspace_id),
                UsageAlertHistory.feature_code == feature_code,
                UsageAlertHistory.threshold == threshold,
                UsageAlertHistory.resolved_at.is_(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def resolve_all_for_feature(self, session: AsyncSession, workspace_id: str, feature_code: str) -> int:
        # Close every open alert for the feature; the caller commits.
        now = self._now()
        result = await session.execute(
            update(UsageAlertHistory)
            .where(
                workspace_predicate(UsageAlertHistory, workspace_id),
                UsageAlertHistory.feature_code == feature_code,
                UsageAlertHistory.resolved_at.is_(None),
            )
            .values(resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        resolved = result.rowcount or 0
        if resolved:
            await self._events.emit(
                session,
                events.USAGE_ALERT_RESOLVED,
                workspace_id=workspace_id,
                feature_code=feature_code,
                payload={"resolved": resolved},
                occurred_at=now,
            )
            logger.info(
                "usage_alerts_resolved workspace_id=%s feature_code=%s count=%s",
                workspace_id,
                feature_code,
                resolved,
            )
        return resolved

    async def resolve_alert(self, session: AsyncSession, alert_id: int) -> bool:
        # Manual resolution, e.g. after an upgrade; already-resolved or unknown alerts report False.
        alert = await session.get(UsageAlertHistory, alert_id, populate_existing=True)
        if alert is None or alert.resolved_at is not None:
            return False
        now = self._now()
        alert.resolved_at = now
        await self._events.emit(
            session,
            events.USAGE_ALERT_RESOLVED,
            workspace_id=alert.workspace_id,
            feature_code=alert.feature_code,
            payload={"alert_id": alert.id, "threshold": alert.threshold, "resolved": 1},
            occurred_at=now,
        )
        await self._events.commit(session)
        logger.info(
            "usage_alert_resolved alert_id=%s workspace_id=%s feature_code=%s",
            alert.id,
            alert.workspace_id,
            alert.feature_code,
        )
        return True

    async def active_alerts(self, session: AsyncSession, workspace_id: str) -> list[UsageAlertHistory]:
        result = await session.execute(
            select(UsageAlertHistory)
            .where(
                workspace_predicate(UsageAlertHistory, workspace_id),
                UsageAlertHistory.resolved_at.is_(None),
            )
            .order_by(UsageAlertHistory.threshold.desc(), UsageAlertHistory.notified_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def alert_history(
        self,
        session: AsyncSession,
        workspace_id: str,
        *,
        days: int = 30,
    ) -> list[UsageAlertHistory]:
        since = self._now() - timedelta(days=days)
        result = await session.execute(
            select(UsageAlertHistory)
            .where(
                workspace_predicate(UsageAlertHistory, workspace_id),
                UsageAlertHistory.notified_at >= since,
            )
            .order_by(UsageAlertHistory.notified_at.desc(), UsageAlertHistory.id.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _send_alert(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        threshold: int,
        *,
        used: int,
        limit: int,
        percentage: float | None,
    ) -> bool:
        now = self._now()
        metadata: dict[str, Any] = {"used": used, "limit": limit, "percentage": percentage}
        try:
            async with session.begin_nested():
                alert = UsageAlertHistory(
                    workspace_id=workspace_id,
                    feature_code=feature_code,
                    threshold=threshold,
                    notified_at=now,
                    metadata_json=metadata,
                )
                session.add(alert)
        except IntegrityError:
            # A concurrent checker recorded this threshold first.
            return False
        await self._events.emit(
            session,
            events.USAGE_ALERT_SENT,
            workspace_id=workspace_id,
            feature_code=feature_code,
            payload={"alert_id": alert.id, "threshold": threshold, **metadata},
            occurred_at=now,
        )
        logger.info(
            "usage_alert_sent workspace_id=%s feature_code=%s threshold=%s used=%s limit=%s",
            workspace_id,
            feature_code,
            threshold,
            used,
            limit,
        )
        return True

    async def _workspaces_with_packages(self, session: AsyncSession) -> list[str]:
        now = self._now()
        result = await session.execute(
            select(WorkspacePackageAssignment.workspace_id)
            .where(
                WorkspacePackageAssignment.status == ASSIGNMENT_STATUS_ACTIVE,
                WorkspacePackageAssignment.starts_at <= now,
                or_(
                    WorkspacePackageAssignment.ends_at.is_(None),
                    WorkspacePackageAssignment.ends_at > now,
                ),
            )
            .distinct()
            .order_by(WorkspacePackageAssignment.workspace_id)
        )
        return list(result.scalars().all())
