from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from entitlekit.domain.models import Base
from entitlekit.persistence.db import enable_sqlite_savepoints
from entitlekit.services.catalog import Catalog, parse_catalog
from entitlekit.services.events import EntitlementEvent, EventEmitter
from entitlekit.services.resolver import EntitlementResolver


CATALOG_DOCUMENT: dict[str, Any] = {
    "features": [
        {"code": "bio.enabled", "name": "Bio pages", "type": "boolean", "category": "bio", "sort_order": 1},
        {"code": "bio.pages", "name": "Bio page count", "type": "limit", "category": "bio", "sort_order": 2},
        {"code": "ai.credits", "name": "AI credits", "type": "limit", "reset_policy": "monthly", "category": "ai"},
        {
            "code": "ai.credits.images",
            "type": "limit",
            "reset_policy": "monthly",
            "parent": "ai.credits",
            "category": "ai",
            "sort_order": 1,
        },
        {
            "code": "ai.credits.text",
            "type": "limit",
            "reset_policy": "monthly",
            "parent": "ai.credits",
            "category": "ai",
            "sort_order": 2,
        },
        {
            "code": "api.requests",
            "type": "limit",
            "reset_policy": "rolling",
            "rolling_window_days": 30,
            "category": "api",
        },
        {"code": "storage.assets", "type": "unlimited", "category": "storage"},
        {"code": "support.priority", "type": "boolean", "category": "support"},
        {"code": "legacy.widgets", "type": "limit", "is_active": False, "category": "legacy"},
    ],
    "packages": [
        {
            "code": "starter",
            "is_base_package": True,
            "features": [
                "bio.enabled",
                {"code": "bio.pages", "limit": 10},
                {"code": "ai.credits", "limit": 100},
                {"code": "ai.credits.images", "limit": 25},
                {"code": "api.requests", "limit": 5},
                {"code": "legacy.widgets", "limit": 3},
            ],
        },
        {
            "code": "pro",
            "is_base_package": True,
            "features": [
                "bio.enabled",
                {"code": "bio.pages", "limit": 50},
                {"code": "ai.credits", "limit": 1000},
                "storage.assets",
            ],
        },
        {"code": "extra-pages", "is_stackable": True, "features": [{"code": "bio.pages", "limit": 5}]},
        {
            "code": "priority-support",
            "features": ["support.priority", {"code": "ai.credits", "limit": 50}],
        },
        {"code": "unlimited-pages", "features": ["bio.pages"]},
        {"code": "retired", "is_base_package": True, "is_active": False, "features": ["bio.enabled"]},
    ],
}


class FrozenClock:
    # Deterministic time source; tests move it explicitly.

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
async def engine():
    # One shared in-memory connection so every session sees the same schema and rows.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def catalog() -> Catalog:
    return parse_catalog(CATALOG_DOCUMENT)


@pytest.fixture
def recorded_events() -> list[EntitlementEvent]:
    return []


@pytest.fixture
def emitter(clock: FrozenClock, recorded_events: list[EntitlementEvent]) -> EventEmitter:
    return EventEmitter([recorded_events.append], time_provider=clock)


@pytest.fixture
def resolver(catalog: Catalog, clock: FrozenClock, emitter: EventEmitter) -> EntitlementResolver:
    return EntitlementResolver(
        catalog,
        event_emitter=emitter,
        time_provider=clock,
        billing_timezone="UTC",
        max_retries=1,
    )


@pytest.fixture
def grants(resolver: EntitlementResolver):
    return resolver.grant_store


@pytest.fixture
def workspace_id() -> str:
    return f"ws-{uuid4().hex}"
