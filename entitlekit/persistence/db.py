from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from entitlekit.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    # Ledger writes are short single statements; bound the asyncpg pool and cap statement time.
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options["pool_size"] = max(1, int(settings.api_db_pool_size))
    options["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


def enable_sqlite_savepoints(engine: AsyncEngine, *, begin: str = "BEGIN") -> AsyncEngine:
    """Let SQLAlchemy own BEGIN on pysqlite/aiosqlite so SAVEPOINT/RELEASE nest correctly.

    Without this the driver defers BEGIN and releasing an outermost savepoint commits.
    Pass begin="BEGIN IMMEDIATE" when several connections write the same file.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql(begin)

    return engine


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    resolved = settings or get_settings()
    built = create_async_engine(resolved.database_url, **engine_options(resolved))
    if resolved.database_url.startswith("sqlite"):
        enable_sqlite_savepoints(built)
    return built


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
