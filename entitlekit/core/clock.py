from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


TimeProvider = Callable[[], datetime]


def utc_now() -> datetime:
    # Use UTC for every stored timestamp so period and expiry comparisons stay consistent.
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we persist is UTC, so re-attach it.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def require_aware(value: datetime, *, field: str = "now") -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"{field} must be timezone-aware")
    return value
