from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.core.clock import TimeProvider, require_aware, utc_now
from entitlekit.core.config import get_settings
from entitlekit.core.errors import ConcurrencyConflict
from entitlekit.domain.catalog import Feature, Package, ResetPolicy
from entitlekit.domain.models import (
    BOOST_TYPE_ADD_LIMIT,
    BOOST_TYPE_ENABLE,
    BOOST_TYPE_UNLIMITED,
    SOURCE_SYSTEM,
    Boost,
    WorkspacePackageAssignment,
)
from entitlekit.domain.results import (
    REASON_FEATURE_UNKNOWN,
    REASON_LIMIT_EXCEEDED,
    REASON_NOT_ENTITLED,
    EntitlementResult,
    allowed,
    denied,
    unlimited,
)
from entitlekit.persistence.guards import normalize_namespace_id, require_workspace_id
from entitlekit.persistence.repos.grants import WorkspaceGrantStore, boost_headroom
from entitlekit.persistence.repos.usage import UsageLedger
from entitlekit.services import events
from entitlekit.services.allowance import (
    BOOLEAN,
    UNLIMITED,
    Allowance,
    BooleanAllowance,
    Limited,
    Unlimited,
    merge_all,
    numeric_limit,
)
from entitlekit.services.catalog import Catalog, CatalogProvider, current_catalog
from entitlekit.services.events import EventEmitter
from entitlekit.services.periods import QuotaPeriod, current_period, resolve_timezone


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    """Outcome of recording usage against the accounting feature."""

    workspace_id: str
    feature_code: str
    period_key: str
    quantity: int
    used: int
    boost_consumed: int = 0
    namespace_id: str | None = None


@dataclass(frozen=True)
class _Grants:
    # Everything a workspace (or one namespace) holds at one instant, loaded once per operation.
    packages: tuple[Package, ...]
    boosts: dict[str, list[Boost]]
    namespace_id: str | None = None


@dataclass(frozen=True)
class _FeatureAllowance:
    package: Allowance | None
    boosts: Allowance | None

    @property
    def total(self) -> Allowance | None:
        return merge_all(a for a in (self.package, self.boosts) if a is not None)


class EntitlementResolver:
    """Decides whether a workspace may use a feature and accounts for the usage.

    The catalog is read-only reference data; grants and usage are read through
    the grant store and ledger on the caller's session. ``resolve`` never
    writes. ``record_usage`` and ``consume`` commit their own unit of work.

    Passing ``namespace_id`` evaluates a namespace inside the workspace: a
    namespace holding its own grants along the feature's pool is judged and
    charged on those alone; otherwise it shares the workspace pool.
    """

    def __init__(
        self,
        catalog: Catalog | CatalogProvider,
        *,
        grant_store: WorkspaceGrantStore | None = None,
        ledger: UsageLedger | None = None,
        event_emitter: EventEmitter | None = None,
        time_provider: TimeProvider | None = None,
        billing_timezone: str | tzinfo | None = None,
        max_retries: int | None = None,
    ) -> None:
        settings = get_settings()
        self._catalog = catalog
        self._now = time_provider or utc_now
        self._events = event_emitter or EventEmitter(time_provider=self._now)
        self._grants = grant_store or WorkspaceGrantStore(
            catalog, event_emitter=self._events, time_provider=self._now
        )
        self._ledger = ledger or UsageLedger()
        self._tz = resolve_timezone(billing_timezone if billing_timezone is not None else settings.billing_timezone)
        self._max_retries = max(
            0, int(max_retries if max_retries is not None else settings.consume_max_retries)
        )

    @property
    def catalog(self) -> Catalog:
        return current_catalog(self._catalog)

    @property
    def grant_store(self) -> WorkspaceGrantStore:
        return self._grants

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def event_emitter(self) -> EventEmitter:
        return self._events

    @property
    def clock(self) -> TimeProvider:
        return self._now

    def period_for(self, feature: Feature, now: datetime | None = None) -> QuotaPeriod:
        return current_period(feature.reset_policy, require_aware(now or self._now()), self._tz)

    async def resolve(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        requested_quantity: int = 1,
        *,
        namespace_id: str | None = None,
    ) -> EntitlementResult:
        if requested_quantity < 1:
            raise ValueError("requested_quantity must be >= 1")
        workspace_id = require_workspace_id(workspace_id)
        catalog = self.catalog
        feature = catalog.features.lookup(feature_code)
        if feature is None or not feature.is_active:
            logger.debug("entitlement_feature_unknown workspace_id=%s feature_code=%s", workspace_id, feature_code)
            return denied(REASON_FEATURE_UNKNOWN, feature_code)

        now = self._now()
        chain = catalog.features.pool_chain(feature.code)
        grants = await self._load_scoped_grants(
            session, workspace_id, normalize_namespace_id(namespace_id), catalog, chain, now
        )
        result = await self._evaluate(session, workspace_id, chain, grants, now, requested_quantity)
        logger.debug(
            "entitlement_resolved workspace_id=%s namespace_id=%s feature_code=%s allowed=%s reason=%s",
            workspace_id,
            grants.namespace_id,
            feature_code,
            result.allowed,
            result.reason,
        )
        return result

    async def resolve_for_namespace(
        self,
        session: AsyncSession,
        workspace_id: str,
        namespace_id: str,
        feature_code: str,
        requested_quantity: int = 1,
    ) -> EntitlementResult:
        return await self.resolve(
            session, workspace_id, feature_code, requested_quantity, namespace_id=_require_namespace(namespace_id)
        )

    async def record_usage(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
        *,
        namespace_id: str | None = None,
    ) -> UsageRecord:
        """Count ``quantity`` against the feature and every pool ancestor.

        Usable add_limit boosts absorb usage first (soonest expiry first); the
        remainder lands in the ledger. Recording does not enforce limits; pair
        it with ``resolve`` or use ``consume`` for a capped write.
        """
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        workspace_id = require_workspace_id(workspace_id)
        record = await self._record(
            session,
            workspace_id,
            normalize_namespace_id(namespace_id),
            feature_code,
            quantity,
            metadata,
            capped=False,
        )
        await self._events.commit(session)
        return record

    async def record_namespace_usage(
        self,
        session: AsyncSession,
        workspace_id: str,
        namespace_id: str,
        feature_code: str,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord:
        return await self.record_usage(
            session, workspace_id, feature_code, quantity, metadata, namespace_id=_require_namespace(namespace_id)
        )

    async def consume(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
        *,
        namespace_id: str | None = None,
    ) -> EntitlementResult:
        """Resolve and, when allowed, record usage in one capped step.

        Returns the verdict the usage was admitted under. Each attempt writes
        inside a savepoint, so a lost race at the ledger unwinds only that
        attempt before it is retried after re-resolving. Once retries run out
        the call reports ``limit_exceeded`` and leaves the caller's
        transaction open with its earlier work intact.
        """
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        workspace_id = require_workspace_id(workspace_id)
        namespace_id = normalize_namespace_id(namespace_id)
        attempt = 0
        while True:
            result = await self.resolve(session, workspace_id, feature_code, quantity, namespace_id=namespace_id)
            if not result.allowed:
                return result
            try:
                async with session.begin_nested():
                    await self._record(
                        session, workspace_id, namespace_id, feature_code, quantity, metadata, capped=True
                    )
            except ConcurrencyConflict as exc:
                attempt += 1
                if attempt > self._max_retries:
                    logger.warning(
                        "consume_conflict_exhausted workspace_id=%s feature_code=%s attempts=%s",
                        workspace_id,
                        feature_code,
                        attempt,
                        exc_info=exc,
                    )
                    return denied(REASON_LIMIT_EXCEEDED, result.feature_code, result.limit, result.used)
                logger.info(
                    "consume_conflict_retry workspace_id=%s feature_code=%s attempt=%s",
                    workspace_id,
                    feature_code,
                    attempt,
                )
                continue
            await self._events.commit(session)
            return result

    async def reset_usage(
        self,
        session: AsyncSession,
        workspace_id: str,
        feature_code: str,
        *,
        namespace_id: str | None = None,
        source: str = SOURCE_SYSTEM,
    ) -> int:
        # Operator action: clear the current period for one feature.
        workspace_id = require_workspace_id(workspace_id)
        namespace_id = normalize_namespace_id(namespace_id)
        feature = self.catalog.features.lookup(feature_code)
        now = self._now()
        policy = feature.reset_policy if feature is not None else ResetPolicy.none()
        period = current_period(policy, now, self._tz)
        cleared = await self._ledger.reset(session, workspace_id, feature_code, period, namespace_id=namespace_id)
        payload: dict[str, Any] = {"period_key": period.key, "cleared": cleared}
        if namespace_id is not None:
            payload["namespace_id"] = namespace_id
        await self._events.emit(
            session,
            events.USAGE_RESET,
            workspace_id=workspace_id,
            feature_code=feature_code,
            payload=payload,
            source=source,
            occurred_at=now,
        )
        await self._events.commit(session)
        logger.info(
            "usage_reset workspace_id=%s namespace_id=%s feature_code=%s period_key=%s cleared=%s",
            workspace_id,
            namespace_id,
            feature_code,
            period.key,
            cleared,
        )
        return cleared

    async def _load_grants(
        self,
        session: AsyncSession,
        workspace_id: str,
        catalog: Catalog,
        chain: list[Feature],
        now: datetime,
        *,
        namespace_id: str | None = None,
    ) -> _Grants:
        assignments = await self._grants.active_assignments(session, workspace_id, now, namespace_id=namespace_id)
        boosts = await self._grants.usable_boosts_by_feature(
            session, workspace_id, [feature.code for feature in chain], now, namespace_id=namespace_id
        )
        return _Grants(
            packages=_counted_packages(catalog, assignments),
            boosts=boosts,
            namespace_id=namespace_id,
        )

    async def _load_scoped_grants(
        self,
        session: AsyncSession,
        workspace_id: str,
        namespace_id: str | None,
        catalog: Catalog,
        chain: list[Feature],
        now: datetime,
    ) -> _Grants:
        # A namespace holding any grant along the pool chain stands alone; otherwise it uses the workspace pool.
        if namespace_id is not None:
            grants = await self._load_grants(session, workspace_id, catalog, chain, now, namespace_id=namespace_id)
            if any(self._allowance_for(member, grants).total is not None for member in chain):
                return grants
            logger.debug(
                "namespace_uses_workspace_pool workspace_id=%s namespace_id=%s feature_code=%s",
                workspace_id,
                namespace_id,
                chain[0].code,
            )
        return await self._load_grants(session, workspace_id, catalog, chain, now)

    def _allowance_for(self, feature: Feature, grants: _Grants) -> _FeatureAllowance:
        package_sources: list[Allowance] = []
        for package in grants.packages:
            grant = package.grant_for(feature.code)
            if grant is None:
                continue
            if feature.is_boolean:
                package_sources.append(BOOLEAN)
            elif feature.is_unlimited or grant.limit is None:
                package_sources.append(UNLIMITED)
            else:
                package_sources.append(Limited(grant.limit))
        boost_sources: list[Allowance] = []
        for boost in grants.boosts.get(feature.code, []):
            if boost.boost_type == BOOST_TYPE_ENABLE:
                boost_sources.append(BOOLEAN)
            elif boost.boost_type == BOOST_TYPE_UNLIMITED:
                boost_sources.append(UNLIMITED)
            elif boost.boost_type == BOOST_TYPE_ADD_LIMIT:
                boost_sources.append(Limited(boost_headroom(boost)))
        return _FeatureAllowance(package=merge_all(package_sources), boosts=merge_all(boost_sources))

    async def _evaluate(
        self,
        session: AsyncSession,
        workspace_id: str,
        chain: list[Feature],
        grants: _Grants,
        now: datetime,
        requested_quantity: int,
    ) -> EntitlementResult:
        feature = chain[0]
        own = self._allowance_for(feature, grants).total
        if own is None:
            return denied(REASON_NOT_ENTITLED, feature.code)
        if feature.is_unlimited:
            return unlimited(feature.code)

        # Every numeric constraint in the chain must admit the request; the tightest one is reported.
        tightest: EntitlementResult | None = None
        for depth, member in enumerate(chain):
            allowance = own if depth == 0 else self._allowance_for(member, grants).total
            if allowance is None:
                return denied(REASON_NOT_ENTITLED, member.code)
            if member.is_boolean or member.is_unlimited or isinstance(allowance, Unlimited):
                continue
            if depth == 0 and len(chain) > 1 and isinstance(allowance, BooleanAllowance):
                # A pooled child entitled without its own number draws only on the pool.
                continue
            limit = numeric_limit(allowance) or 0
            used = await self._ledger.get(
                session, workspace_id, member.code, self.period_for(member, now), namespace_id=grants.namespace_id
            )
            if limit - used < requested_quantity:
                return denied(REASON_LIMIT_EXCEEDED, member.code, limit, used)
            candidate = allowed(limit, used, member.code)
            if tightest is None or (candidate.remaining or 0) < (tightest.remaining or 0):
                tightest = candidate

        if tightest is not None:
            return tightest
        if feature.is_boolean:
            return allowed(feature_code=feature.code)
        return unlimited(feature.code)

    async def _record(
        self,
        session: AsyncSession,
        workspace_id: str,
        namespace_id: str | None,
        feature_code: str,
        quantity: int,
        metadata: dict[str, Any] | None,
        *,
        capped: bool,
    ) -> UsageRecord:
        catalog = self.catalog
        now = self._now()
        feature = catalog.features.lookup(feature_code)
        if feature is None:
            # Unknown codes are still counted so nothing a caller reports is lost.
            period = current_period(ResetPolicy.none(), now, self._tz)
            used = await self._ledger.increment(
                session, workspace_id, feature_code, period, quantity, metadata=metadata, namespace_id=namespace_id
            )
            logger.warning(
                "usage_recorded_for_unknown_feature workspace_id=%s feature_code=%s",
                workspace_id,
                feature_code,
            )
            return UsageRecord(workspace_id, feature_code, period.key, quantity, used, namespace_id=namespace_id)

        chain = catalog.features.pool_chain(feature.code)
        grants = await self._load_scoped_grants(session, workspace_id, namespace_id, catalog, chain, now)
        scope = grants.namespace_id
        record: UsageRecord | None = None
        for depth, member in enumerate(chain):
            if not member.is_limit:
                continue
            allowance = self._allowance_for(member, grants)
            total = allowance.total
            period = self.period_for(member, now)

            covered = 0
            if total is not None and not isinstance(total, Unlimited):
                covered = await self._grants.drain_boosts(
                    session, workspace_id, member.code, quantity, now, namespace_id=scope
                )
            cap = self._ledger_cap(allowance, pooled_child=depth == 0 and len(chain) > 1) if capped else None
            to_ledger = quantity - covered
            if to_ledger > 0:
                used = await self._ledger.increment(
                    session,
                    workspace_id,
                    member.code,
                    period,
                    to_ledger,
                    cap=cap,
                    metadata=metadata,
                    namespace_id=scope,
                )
            else:
                used = await self._ledger.get(session, workspace_id, member.code, period, namespace_id=scope)

            limit = numeric_limit(total)
            if limit is not None:
                remaining = limit - covered - used
                if remaining <= 0 < remaining + quantity:
                    payload: dict[str, Any] = {"limit": limit - covered, "used": used, "period_key": period.key}
                    if scope is not None:
                        payload["namespace_id"] = scope
                    await self._events.emit(
                        session,
                        events.QUOTA_LIMIT_REACHED,
                        workspace_id=workspace_id,
                        feature_code=member.code,
                        payload=payload,
                        occurred_at=now,
                    )
            if depth == 0:
                record = UsageRecord(workspace_id, member.code, period.key, quantity, used, covered, scope)

        if record is None:
            # Boolean and unlimited features carry no usage of their own.
            record = UsageRecord(
                workspace_id, feature.code, self.period_for(feature, now).key, quantity, 0, namespace_id=scope
            )
        logger.info(
            "usage_recorded workspace_id=%s namespace_id=%s feature_code=%s quantity=%s used=%s boost_consumed=%s",
            workspace_id,
            scope,
            feature.code,
            quantity,
            record.used,
            record.boost_consumed,
        )
        return record

    @staticmethod
    def _ledger_cap(allowance: _FeatureAllowance, *, pooled_child: bool) -> int | None:
        # Ledger usage may only grow up to what packages grant; boost headroom is spent separately.
        total = allowance.total
        if total is None:
            return 0
        if isinstance(total, Unlimited):
            return None
        if pooled_child and isinstance(total, BooleanAllowance):
            return None
        return numeric_limit(allowance.package) or 0


def _counted_packages(
    catalog: Catalog,
    assignments: list[WorkspacePackageAssignment],
) -> tuple[Package, ...]:
    # Newest base package counts once; plain addons once per code; stackable addons per assignment.
    counted: list[Package] = []
    base_seen = False
    addon_codes: set[str] = set()
    for assignment in assignments:
        package = catalog.packages.lookup(assignment.package_code)
        if package is None:
            logger.warning(
                "assignment_package_unknown workspace_id=%s package_code=%s assignment_id=%s",
                assignment.workspace_id,
                assignment.package_code,
                assignment.id,
            )
            continue
        if package.is_base_package:
            if base_seen:
                continue
            base_seen = True
        elif not package.is_stackable:
            if package.code in addon_codes:
                continue
            addon_codes.add(package.code)
        counted.append(package)
    return tuple(counted)


def _require_namespace(namespace_id: str | None) -> str:
    normalized = normalize_namespace_id(namespace_id)
    if normalized is None:
        raise ValueError("namespace_id is required")
    return normalized
