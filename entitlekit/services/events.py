from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import inspect
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import event as sa_event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from entitlekit.core.clock import TimeProvider, as_utc, utc_now
from entitlekit.domain.models import SOURCE_SYSTEM, EntitlementLog


logger = logging.getLogger(__name__)

BOOST_GRANTED = "boost.granted"
BOOST_EXPIRED = "boost.expired"
BOOST_EXHAUSTED = "boost.exhausted"
BOOST_CANCELLED = "boost.cancelled"
PACKAGE_ASSIGNED = "package.assigned"
PACKAGE_CANCELLED = "package.cancelled"
PACKAGE_SUSPENDED = "package.suspended"
PACKAGE_REACTIVATED = "package.reactivated"
QUOTA_LIMIT_REACHED = "quota.limit_reached"
USAGE_RESET = "usage.reset"
USAGE_ALERT_SENT = "usage.alert_sent"
USAGE_ALERT_RESOLVED = "usage.alert_resolved"

EVENT_TYPES = {
    BOOST_GRANTED,
    BOOST_EXPIRED,
    BOOST_EXHAUSTED,
    BOOST_CANCELLED,
    PACKAGE_ASSIGNED,
    PACKAGE_CANCELLED,
    PACKAGE_SUSPENDED,
    PACKAGE_REACTIVATED,
    QUOTA_LIMIT_REACHED,
    USAGE_RESET,
    USAGE_ALERT_SENT,
    USAGE_ALERT_RESOLVED,
}

# session.info keys; entries are (transaction, event) until the root transaction commits.
_PENDING_KEY = "entitlekit.pending_events"
_READY_KEY = "entitlekit.ready_events"


@dataclass(frozen=True)
class EntitlementEvent:
    event_type: str
    workspace_id: str
    feature_code: str | None
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = SOURCE_SYSTEM


EventListener = Callable[[EntitlementEvent], "Awaitable[None] | None"]


class EventEmitter:
    """Publishes engine events to the audit log and in-process listeners.

    Persistence rides on the caller's session and transaction. Listeners only
    hear about work that committed: events emitted on a session are held until
    its root transaction commits and are dropped with any transaction or
    savepoint that rolls back. ``commit`` commits and delivers in one call;
    callers that commit on their own follow up with ``deliver``.

    Neither a failing log write nor a failing listener ever changes the
    outcome of the operation that emitted it.
    """

    def __init__(
        self,
        listeners: list[EventListener] | None = None,
        *,
        persist: bool = True,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._listeners: list[EventListener] = list(listeners or [])
        self._persist = persist
        self._now = time_provider or utc_now

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(
        self,
        session: AsyncSession | None,
        event_type: str,
        *,
        workspace_id: str,
        feature_code: str | None = None,
        payload: dict[str, Any] | None = None,
        source: str = SOURCE_SYSTEM,
        occurred_at: datetime | None = None,
    ) -> EntitlementEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown entitlement event type: {event_type}")
        event = EntitlementEvent(
            event_type=event_type,
            workspace_id=workspace_id,
            feature_code=feature_code,
            timestamp=as_utc(occurred_at) or self._now(),
            payload=dict(payload or {}),
            source=source,
        )
        logger.info(
            "entitlement_event event_type=%s workspace_id=%s feature_code=%s",
            event.event_type,
            event.workspace_id,
            event.feature_code,
        )
        if session is None:
            await self._notify(event)
            return event
        if self._persist:
            await self._stage_log_row(session, event)
        _hold(session, event)
        return event

    async def commit(self, session: AsyncSession) -> None:
        await session.commit()
        await self.deliver(session)

    async def deliver(self, session: AsyncSession) -> int:
        """Notify listeners of events whose transaction has committed."""
        ready: list[EntitlementEvent] = session.info.pop(_READY_KEY, [])
        for event in ready:
            await self._notify(event)
        return len(ready)

    async def _stage_log_row(self, session: AsyncSession, event: EntitlementEvent) -> None:
        # Best-effort audit row; a failed insert only unwinds its own savepoint.
        try:
            async with session.begin_nested():
                session.add(
                    EntitlementLog(
                        workspace_id=event.workspace_id,
                        feature_code=event.feature_code,
                        event_type=event.event_type,
                        source=event.source,
                        payload_json=_json_safe(event.payload),
                        occurred_at=as_utc(event.timestamp),
                    )
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "entitlement_log_write_failed event_type=%s workspace_id=%s",
                event.event_type,
                event.workspace_id,
                exc_info=exc,
            )

    async def _notify(self, event: EntitlementEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001 - listener failures are non-fatal
                logger.warning(
                    "entitlement_listener_failed event_type=%s workspace_id=%s listener=%s",
                    event.event_type,
                    event.workspace_id,
                    getattr(listener, "__qualname__", repr(listener)),
                    exc_info=exc,
                )


def _hold(session: AsyncSession, event: EntitlementEvent) -> None:
    sync_session = session.sync_session
    if not sa_event.contains(sync_session, "after_commit", _release_on_commit):
        sa_event.listen(sync_session, "after_commit", _release_on_commit)
        sa_event.listen(sync_session, "after_soft_rollback", _drop_on_rollback)
    owner = sync_session.get_nested_transaction() or sync_session.get_transaction() or sync_session.begin()
    sync_session.info.setdefault(_PENDING_KEY, []).append((owner, event))


def _release_on_commit(sync_session: Session) -> None:
    # Fires for savepoint releases too; only the root commit makes events durable.
    if sync_session.get_nested_transaction() is not None:
        return
    pending = sync_session.info.pop(_PENDING_KEY, [])
    sync_session.info.setdefault(_READY_KEY, []).extend(event for _, event in pending)


def _drop_on_rollback(sync_session: Session, previous_transaction: SessionTransaction) -> None:
    pending = sync_session.info.get(_PENDING_KEY)
    if not pending:
        return
    kept = [(owner, event) for owner, event in pending if not _rolled_back(owner, previous_transaction)]
    dropped = len(pending) - len(kept)
    sync_session.info[_PENDING_KEY] = kept
    logger.debug("entitlement_events_dropped count=%s nested=%s", dropped, previous_transaction.nested)


def _rolled_back(owner: SessionTransaction | None, rolled_back: SessionTransaction) -> bool:
    if rolled_back.parent is None:
        return True
    while owner is not None:
        if owner is rolled_back:
            return True
        owner = owner.parent
    return False


def _json_safe(value: Any) -> Any:
    # Payloads land in a JSON column; datetimes are the only non-JSON values we emit.
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value
