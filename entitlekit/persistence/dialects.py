from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def insert_ignoring_conflicts(session: AsyncSession, model: Any, values: dict[str, Any], index_elements: list[Any]):
    # Race-safe lazy creation: concurrent inserts of the same key collapse to one row.
    if dialect_name(session) == "sqlite":
        stmt = sqlite_insert(model).values(**values)
    else:
        stmt = pg_insert(model).values(**values)
    return stmt.on_conflict_do_nothing(index_elements=index_elements)


def supports_row_locks(session: AsyncSession) -> bool:
    # SQLite serialises writers itself and rejects FOR UPDATE.
    return dialect_name(session) != "sqlite"
