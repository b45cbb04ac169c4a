from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.core.clock import TimeProvider, as_utc, utc_now
from entitlekit.core.errors import BoostValidationError, UnknownPackageError
from entitlekit.domain.models import (
    ASSIGNMENT_STATUS_ACTIVE,
    ASSIGNMENT_STATUS_CANCELLED,
    ASSIGNMENT_STATUS_SUSPENDED,
    BOOST_DURATION_CYCLE_BOUND,
    BOOST_DURATION_PERMANENT,
    BOOST_DURATION_TIME_BOUNDED,
    BOOST_DURATIONS,
    BOOST_STATUS_ACTIVE,
    BOOST_STATUS_CANCELLED,
    BOOST_STATUS_EXHAUSTED,
    BOOST_STATUS_EXPIRED,
    BOOST_STATUS_PENDING,
    BOOST_TERMINAL_STATUSES,
    BOOST_TYPE_ADD_LIMIT,
    BOOST_TYPES,
    SOURCE_SYSTEM,
    Boost,
    WorkspacePackageAssignment,
)
from entitlekit.persistence.guards import (
    namespace_predicate,
    normalize_namespace_id,
    require_workspace_id,
    workspace_predicate,
)
from entitlekit.services import events
from entitlekit.services.catalog import Catalog, CatalogProvider, current_catalog
from entitlekit.services.events import EventEmitter
from entitlekit.services.periods import billing_cycle


logger = logging.getLogger(__name__)


def effective_boost_status(boost: Boost, now: datetime) -> str:
    # Stored status can lag behind the clock; derive the status that is true at ``now``.
    if boost.status in BOOST_TERMINAL_STATUSES:
        return boost.status
    expires_at = as_utc(boost.expires_at)
    if expires_at is not None and now > expires_at:
        return BOOST_STATUS_EXPIRED
    if (
        boost.boost_type == BOOST_TYPE_ADD_LIMIT
        and boost.limit_value is not None
        and boost.consumed_quantity >= boost.limit_value
    ):
        return BOOST_STATUS_EXHAUSTED
    if as_utc(boost.starts_at) > now:
        return BOOST_STATUS_PENDING
    return BOOST_STATUS_ACTIVE


def boost_headroom(boost: Boost) -> int:
    if boost.limit_value is None:
        return 0
    return max(boost.limit_value - boost.consumed_quantity, 0)


def _boost_drain_order(boost: Boost) -> tuple[int, datetime, int]:
    # Spend what expires soonest first; permanent boosts queue behind by grant time.
    expires_at = as_utc(boost.expires_at)
    if expires_at is not None:
        return (0, expires_at, boost.id)
    return (1, as_utc(boost.starts_at), boost.id)


def is_assignment_active(assignment: WorkspacePackageAssignment, now: datetime) -> bool:
    if assignment.status != ASSIGNMENT_STATUS_ACTIVE:
        return False
    if as_utc(assignment.starts_at) > now:
        return False
    ends_at = as_utc(assignment.ends_at)
    return ends_at is None or ends_at > now


def _scoped(payload: dict[str, Any], namespace_id: str | None) -> dict[str, Any]:
    if namespace_id is not None:
        payload["namespace_id"] = namespace_id
    return payload


class WorkspaceGrantStore:
    """Package assignments and boosts held by each workspace.

    Reads never mutate. Mutations stage their audit events on the same session
    and commit unless the caller passes ``commit=False`` to batch them into a
    larger unit of work; such callers finish with ``event_emitter.commit``.
    """

    def __init__(
        self,
        catalog: Catalog | CatalogProvider,
        *,
        event_emitter: EventEmitter | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._catalog = catalog
        self._events = event_emitter or EventEmitter()
        self._now = time_provider or utc_now

    @property
    def catalog(self) -> Catalog:
        return current_catalog(self._catalog)

    @property
    def event_emitter(self) -> EventEmitter:
        return self._events

    # Reads

    async def active_assignments(
        self,
        session: AsyncSession,
        workspace_id: str,
        now: datetime | None = None,
        *,
        namespace_id: str | None = None,
    ) -> list[WorkspacePackageAssignment]:
        # Most recently started first so the newest base package wins on overlap.
        current = as_utc(now) or self._now()
        result = await session.execute(
            select(WorkspacePackageAssignment)
            .where(
                workspace_predicate(WorkspacePackageAssignment, workspace_id),
                namespace_predicate(WorkspacePackageAssignment, namespace_id),
                WorkspacePackageAssignment.status == ASSIGNMENT_STATUS_ACTIVE,
                WorkspacePackageAssignment.starts_at <= current,
                or_(
                    WorkspacePackageAssignment.ends_at.is_(None),
                    WorkspacePackageAssignment.ends_at > current,
                ),
            )
            .order_by(WorkspacePackageAssignment.starts_at.desc(), WorkspacePackageAssignment.id.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_assignments(
        self,
        session: AsyncSession,
        workspace_id: str,
    ) -> list[WorkspacePackageAssignment]:
        result = await session.execute(
            select(WorkspacePackageAssignment)
            .where(workspace_predicate(WorkspacePackageAssignment, workspace_id))
            .order_by(WorkspacePackageAssignment.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def usable_boosts(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        now: datetime | None = None,
        *,
        namespace_id: str | None = None,
    ) -> list[Boost]:
        by_feature = await self.usable_boosts_by_feature(
            session, workspace_id, [feature_code], now, namespace_id=namespace_id
        )
        return by_feature.get(feature_code, [])

    async def usable_boosts_by_feature(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_codes: Iterable[str],
        now: datetime | None = None,
        *,
        namespace_id: str | None = None,
    ) -> dict[str, list[Boost]]:
        # Load boosts for a whole pool chain in one query; each list is in drain order.
        codes = sorted(set(feature_codes))
        if not codes:
            return {}
        current = as_utc(now) or self._now()
        result = await session.execute(
            select(Boost)
            .where(
                workspace_predicate(Boost, workspace_id),
                namespace_predicate(Boost, namespace_id),
                Boost.feature_code.in_(codes),
                Boost.status.not_in(sorted(BOOST_TERMINAL_STATUSES)),
                Boost.starts_at <= current,
            )
            .execution_options(populate_existing=True)
        )
        grouped: dict[str, list[Boost]] = {code: [] for code in codes}
        for boost in result.scalars().all():
            if effective_boost_status(boost, current) == BOOST_STATUS_ACTIVE:
                grouped[boost.feature_code].append(boost)
        for boosts in grouped.values():
            boosts.sort(key=_boost_drain_order)
        return grouped

    async def list_boosts(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str | None = None,
    ) -> list[Boost]:
        stmt = select(Boost).where(workspace_predicate(Boost, workspace_id))
        if feature_code is not None:
            stmt = stmt.where(Boost.feature_code == feature_code)
        result = await session.execute(stmt.order_by(Boost.id).execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_boost(self, session: AsyncSession, boost_id: int) -> Boost | None:
        return await session.get(Boost, boost_id, populate_existing=True)

    async def base_assignment(
        self,
        session: AsyncSession,
        workspace_id: str,
        now: datetime | None = None,
        *,
        namespace_id: str | None = None,
    ) -> WorkspacePackageAssignment | None:
        for assignment in await self.active_assignments(session, workspace_id, now, namespace_id=namespace_id):
            package = self.catalog.packages.lookup(assignment.package_code)
            if package is not None and package.is_base_package:
                return assignment
        return None

    async def current_billing_cycle(
        self,
        session: AsyncSession,
        workspace_id: str,
        now: datetime | None = None,
        *,
        namespace_id: str | None = None,
    ) -> tuple[datetime, datetime] | None:
        """Return the billing cycle in force at ``now``, or None without a base package.

        Cycles follow the base assignment's ``billing_cycle_anchor``. A
        namespace without its own base package bills on the workspace cycle.
        """
        current = as_utc(now) or self._now()
        base = await self.base_assignment(session, workspace_id, current, namespace_id=namespace_id)
        if base is None and normalize_namespace_id(namespace_id) is not None:
            base = await self.base_assignment(session, workspace_id, current)
        if base is None:
            return None
        anchor = as_utc(base.billing_cycle_anchor) or as_utc(base.starts_at)
        return billing_cycle(anchor, current)

    # Package lifecycle

    async def assign_package(
        self,
        session: AsyncSession,
        workspace_id: str,
        package_code: str,
        *,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
        billing_cycle_anchor: datetime | None = None,
        namespace_id: str | None = None,
        source: str = SOURCE_SYSTEM,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> WorkspacePackageAssignment:
        workspace_id = require_workspace_id(workspace_id)
        namespace_id = normalize_namespace_id(namespace_id)
        package = self.catalog.packages.lookup(package_code)
        if package is None or not package.is_active:
            raise UnknownPackageError(f"unknown or inactive package: {package_code}")
        now = self._now()
        start = as_utc(starts_at) or now
        end = as_utc(ends_at)
        if end is not None and end <= start:
            raise ValueError("ends_at must be after starts_at")

        if package.is_base_package:
            # Each workspace or namespace holds one base package; the new one replaces the old.
            for existing in await self.active_assignments(session, workspace_id, now, namespace_id=namespace_id):
                existing_package = self.catalog.packages.lookup(existing.package_code)
                if existing_package is None or not existing_package.is_base_package:
                    continue
                await self._close_assignment(
                    session,
                    existing,
                    status=ASSIGNMENT_STATUS_CANCELLED,
                    event_type=events.PACKAGE_CANCELLED,
                    source=source,
                    now=now,
                    payload={"replaced_by": package.code},
                )

        assignment = WorkspacePackageAssignment(
            workspace_id=workspace_id,
            namespace_id=namespace_id,
            package_code=package.code,
            status=ASSIGNMENT_STATUS_ACTIVE,
            starts_at=start,
            ends_at=end,
            billing_cycle_anchor=as_utc(billing_cycle_anchor) or start,
            source=source,
            metadata_json=metadata,
        )
        session.add(assignment)
        await session.flush()
        await self._events.emit(
            session,
            events.PACKAGE_ASSIGNED,
            workspace_id=workspace_id,
            payload=_scoped(
                {
                    "assignment_id": assignment.id,
                    "package_code": package.code,
                    "is_base_package": package.is_base_package,
                    "starts_at": start,
                    "ends_at": end,
                },
                namespace_id,
            ),
            source=source,
            occurred_at=now,
        )
        logger.info(
            "package_assigned workspace_id=%s namespace_id=%s package_code=%s assignment_id=%s",
            workspace_id,
            namespace_id,
            package.code,
            assignment.id,
        )
        if commit:
            await self._events.commit(session)
        return assignment

    async def cancel_package(
        self,
        session: AsyncSession,
        workspace_id: str,
        package_code: str,
        *,
        namespace_id: str | None = None,
        source: str = SOURCE_SYSTEM,
        commit: bool = True,
    ) -> int:
        # Cancelling a package the workspace (or namespace) does not hold is a no-op.
        workspace_id = require_workspace_id(workspace_id)
        now = self._now()
        cancelled = 0
        for assignment in await self.active_assignments(session, workspace_id, now, namespace_id=namespace_id):
            if assignment.package_code != package_code:
                continue
            await self._close_assignment(
                session,
                assignment,
                status=ASSIGNMENT_STATUS_CANCELLED,
                event_type=events.PACKAGE_CANCELLED,
                source=source,
                now=now,
            )
            cancelled += 1
        if commit and cancelled:
            await self._events.commit(session)
        return cancelled

    async def suspend_workspace(
        self,
        session: AsyncSession,
        workspace_id: str,
        *,
        source: str = SOURCE_SYSTEM,
        commit: bool = True,
    ) -> int:
        # Suspension keeps assignment windows intact so reactivation restores them as they were.
        workspace_id = require_workspace_id(workspace_id)
        now = self._now()
        result = await session.execute(
            select(WorkspacePackageAssignment)
            .where(
                workspace_predicate(WorkspacePackageAssignment, workspace_id),
                WorkspacePackageAssignment.status == ASSIGNMENT_STATUS_ACTIVE,
            )
            .execution_options(populate_existing=True)
        )
        suspended = 0
        for assignment in result.scalars().all():
            assignment.status = ASSIGNMENT_STATUS_SUSPENDED
            await self._events.emit(
                session,
                events.PACKAGE_SUSPENDED,
                workspace_id=workspace_id,
                payload={"assignment_id": assignment.id, "package_code": assignment.package_code},
                source=source,
                occurred_at=now,
            )
            suspended += 1
        if suspended:
            logger.info("workspace_suspended workspace_id=%s assignments=%s", workspace_id, suspended)
            if commit:
                await self._events.commit(session)
        return suspended

    async def reactivate_workspace(
        self,
        session: AsyncSession,
        workspace_id: str,
        *,
        source: str = SOURCE_SYSTEM,
        commit: bool = True,
    ) -> int:
        workspace_id = require_workspace_id(workspace_id)
        now = self._now()
        result = await session.execute(
            select(WorkspacePackageAssignment)
            .where(
                workspace_predicate(WorkspacePackageAssignment, workspace_id),
                WorkspacePackageAssignment.status == ASSIGNMENT_STATUS_SUSPENDED,
            )
            .execution_options(populate_existing=True)
        )
        reactivated = 0
        for assignment in result.scalars().all():
            assignment.status = ASSIGNMENT_STATUS_ACTIVE
            await self._events.emit(
                session,
                events.PACKAGE_REACTIVATED,
                workspace_id=workspace_id,
                payload={"assignment_id": assignment.id, "package_code": assignment.package_code},
                source=source,
                occurred_at=now,
            )
            reactivated += 1
        if reactivated:
            logger.info("workspace_reactivated workspace_id=%s assignments=%s", workspace_id, reactivated)
            if commit:
                await self._events.commit(session)
        return reactivated

    async def _close_assignment(
        self,
        session: AsyncSession,
        assignment: WorkspacePackageAssignment,
        *,
        status: str,
        event_type: str,
        source: str,
        now: datetime,
        payload: dict[str, Any] | None = None,
    ) -> None:
        assignment.status = status
        assignment.ends_at = now
        await self._events.emit(
            session,
            event_type,
            workspace_id=assignment.workspace_id,
            payload=_scoped(
                {
                    "assignment_id": assignment.id,
                    "package_code": assignment.package_code,
                    **(payload or {}),
                },
                assignment.namespace_id,
            ),
            source=source,
            occurred_at=now,
        )
        logger.info(
            "package_cancelled workspace_id=%s package_code=%s assignment_id=%s",
            assignment.workspace_id,
            assignment.package_code,
            assignment.id,
        )

    # Boost lifecycle

    async def grant_boost(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        *,
        boost_type: str,
        duration_type: str = BOOST_DURATION_PERMANENT,
        limit_value: int | None = None,
        starts_at: datetime | None = None,
        expires_at: datetime | None = None,
        namespace_id: str | None = None,
        source: str = SOURCE_SYSTEM,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> Boost:
        workspace_id = require_workspace_id(workspace_id)
        namespace_id = normalize_namespace_id(namespace_id)
        now = self._now()
        start = as_utc(starts_at) or now
        expiry = as_utc(expires_at)
        self._validate_boost(feature_code, boost_type, duration_type, limit_value, start, expiry)
        if duration_type == BOOST_DURATION_CYCLE_BOUND and expiry is None:
            # Ends with the billing cycle it starts in; without a base package the cycle reset ends it.
            cycle = await self.current_billing_cycle(session, workspace_id, start, namespace_id=namespace_id)
            if cycle is not None:
                expiry = cycle[1]

        boost = Boost(
            workspace_id=workspace_id,
            namespace_id=namespace_id,
            feature_code=feature_code,
            boost_type=boost_type,
            duration_type=duration_type,
            limit_value=limit_value,
            consumed_quantity=0,
            status=BOOST_STATUS_PENDING if start > now else BOOST_STATUS_ACTIVE,
            starts_at=start,
            expires_at=expiry,
            source=source,
            metadata_json=metadata,
        )
        session.add(boost)
        await session.flush()
        await self._events.emit(
            session,
            events.BOOST_GRANTED,
            workspace_id=workspace_id,
            feature_code=feature_code,
            payload=_scoped(
                {
                    "boost_id": boost.id,
                    "boost_type": boost_type,
                    "duration_type": duration_type,
                    "limit_value": limit_value,
                    "starts_at": start,
                    "expires_at": expiry,
                },
                namespace_id,
            ),
            source=source,
            occurred_at=now,
        )
        logger.info(
            "boost_granted workspace_id=%s feature_code=%s boost_id=%s boost_type=%s",
            workspace_id,
            feature_code,
            boost.id,
            boost_type,
        )
        if commit:
            await self._events.commit(session)
        return boost

    def _validate_boost(
        self,
        feature_code: str,
        boost_type: str,
        duration_type: str,
        limit_value: int | None,
        starts_at: datetime,
        expires_at: datetime | None,
    ) -> None:
        feature = self.catalog.features.lookup(feature_code)
        if feature is None:
            raise BoostValidationError(f"unknown feature: {feature_code}")
        if boost_type not in BOOST_TYPES:
            raise BoostValidationError(f"boost_type must be one of: {', '.join(sorted(BOOST_TYPES))}")
        if duration_type not in BOOST_DURATIONS:
            raise BoostValidationError(f"duration_type must be one of: {', '.join(sorted(BOOST_DURATIONS))}")
        if boost_type == BOOST_TYPE_ADD_LIMIT:
            if feature.is_boolean:
                raise BoostValidationError(f"add_limit boosts need a quota feature, got boolean '{feature_code}'")
            if isinstance(limit_value, bool) or not isinstance(limit_value, int) or limit_value < 1:
                raise BoostValidationError("add_limit boosts require a positive integer limit_value")
        elif limit_value is not None:
            raise BoostValidationError("limit_value is only valid for add_limit boosts")
        if duration_type == BOOST_DURATION_PERMANENT:
            if expires_at is not None:
                raise BoostValidationError("permanent boosts cannot carry expires_at")
            return
        if duration_type == BOOST_DURATION_TIME_BOUNDED and expires_at is None:
            raise BoostValidationError("time_bounded boosts require expires_at")
        if expires_at is not None and expires_at <= starts_at:
            raise BoostValidationError("expires_at must be after starts_at")

    async def cancel_boost(
        self,
        session: AsyncSession,
        boost_id: int,
        *,
        source: str = SOURCE_SYSTEM,
        commit: bool = True,
    ) -> Boost | None:
        # Terminal boosts stay as they are; returns None only for unknown ids.
        boost = await self.get_boost(session, boost_id)
        if boost is None:
            return None
        if boost.status in BOOST_TERMINAL_STATUSES:
            return boost
        now = self._now()
        boost.status = BOOST_STATUS_CANCELLED
        await self._events.emit(
            session,
            events.BOOST_CANCELLED,
            workspace_id=boost.workspace_id,
            feature_code=boost.feature_code,
            payload={"boost_id": boost.id, "consumed_quantity": boost.consumed_quantity},
            source=source,
            occurred_at=now,
        )
        logger.info(
            "boost_cancelled workspace_id=%s feature_code=%s boost_id=%s",
            boost.workspace_id,
            boost.feature_code,
            boost.id,
        )
        if commit:
            await self._events.commit(session)
        return boost

    async def consume_boost(self, session: AsyncSession, boost_id: int, quantity: int) -> int | None:
        """Atomically add ``quantity`` to a boost's consumed amount.

        Returns the new consumed total, or None when the boost is terminal or
        the increment would cross ``limit_value``. Reaching the cap flips the
        stored status to ``exhausted`` and emits ``boost.exhausted``.
        """
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        result = await session.execute(
            update(Boost)
            .where(
                Boost.id == boost_id,
                Boost.boost_type == BOOST_TYPE_ADD_LIMIT,
                Boost.status.not_in(sorted(BOOST_TERMINAL_STATUSES)),
                Boost.consumed_quantity + quantity <= Boost.limit_value,
            )
            .values(consumed_quantity=Boost.consumed_quantity + quantity, updated_at=self._now())
            .returning(Boost.consumed_quantity, Boost.limit_value, Boost.workspace_id, Boost.feature_code)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            return None
        consumed, limit_value, workspace_id, feature_code = row
        if consumed >= limit_value:
            await session.execute(
                update(Boost)
                .where(Boost.id == boost_id, Boost.status.not_in(sorted(BOOST_TERMINAL_STATUSES)))
                .values(status=BOOST_STATUS_EXHAUSTED, updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            await self._events.emit(
                session,
                events.BOOST_EXHAUSTED,
                workspace_id=workspace_id,
                feature_code=feature_code,
                payload={"boost_id": boost_id, "limit_value": limit_value},
            )
            logger.info(
                "boost_exhausted workspace_id=%s feature_code=%s boost_id=%s",
                workspace_id,
                feature_code,
                boost_id,
            )
        return int(consumed)

    async def drain_boosts(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        quantity: int,
        now: datetime | None = None,
        *,
        namespace_id: str | None = None,
    ) -> int:
        # Cover as much of ``quantity`` as usable add_limit boosts allow; returns the covered amount.
        current = as_utc(now) or self._now()
        remaining = quantity
        for boost in await self.usable_boosts(session, workspace_id, feature_code, current, namespace_id=namespace_id):
            if remaining <= 0:
                break
            if boost.boost_type != BOOST_TYPE_ADD_LIMIT:
                continue
            take = min(remaining, boost_headroom(boost))
            while take > 0:
                if await self.consume_boost(session, boost.id, take) is not None:
                    remaining -= take
                    break
                # Another writer spent part of this boost since it was read; retry with what is left.
                fresh = await self.get_boost(session, boost.id)
                if fresh is None or effective_boost_status(fresh, current) != BOOST_STATUS_ACTIVE:
                    break
                smaller = min(remaining, boost_headroom(fresh))
                if smaller >= take:
                    break
                logger.info(
                    "boost_drain_retry boost_id=%s requested=%s available=%s",
                    boost.id,
                    take,
                    smaller,
                )
                take = smaller
        return quantity - remaining
