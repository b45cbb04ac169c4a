from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from entitlekit.core.config import get_settings
from entitlekit.core.errors import DatabaseError
from entitlekit.persistence.db import SessionLocal
from entitlekit.services.maintenance import prune_usage_events, sweep_expired_boosts


logger = logging.getLogger(__name__)


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow the sweeper to start before migrations by treating missing tables as a temporary state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def run_boost_sweep_cycle() -> dict[str, Any]:
    # Drain the expired-boost backlog in bounded batches until a short batch signals it is empty.
    batch_size = max(1, int(get_settings().boost_sweep_batch_size))
    expired = 0
    try:
        while True:
            async with SessionLocal() as session:
                swept = await sweep_expired_boosts(session, batch_size=batch_size)
            expired += swept
            if swept < batch_size:
                break
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "boosts_expired": expired}
        raise DatabaseError("boost sweep failed") from exc
    return {"status": "ok", "boosts_expired": expired}


async def run_usage_prune_cycle() -> dict[str, Any]:
    try:
        async with SessionLocal() as session:
            deleted = await prune_usage_events(session)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "usage_events_deleted": 0}
        raise DatabaseError("usage event prune failed") from exc
    return {"status": "ok", "usage_events_deleted": deleted}


async def run_boost_sweep_loop() -> None:
    # Sweep on a fixed cadence and keep going after failures; correctness never waits on the sweep.
    interval = max(5, int(get_settings().boost_sweep_interval_s))
    while True:
        try:
            outcome = await run_boost_sweep_cycle()
            logger.info("boost_sweep_cycle status=%s expired=%s", outcome["status"], outcome["boosts_expired"])
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("boost sweep cycle failed")
        await asyncio.sleep(interval)
