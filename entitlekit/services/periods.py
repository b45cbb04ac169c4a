from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from entitlekit.core.clock import require_aware
from entitlekit.domain.catalog import RESET_MONTHLY, RESET_NONE, RESET_ROLLING, ResetPolicy


ALL_TIME_PERIOD_KEY = "*"


@dataclass(frozen=True)
class QuotaPeriod:
    """Accounting window for one reset policy at one instant.

    ``start``/``end`` are None for the all-time period. Monthly periods are
    half-open ``[start, end)``; rolling windows cover ``(start, end]``.
    """

    key: str
    start: datetime | None
    end: datetime | None
    policy: ResetPolicy

    @property
    def is_rolling(self) -> bool:
        return self.policy.kind == RESET_ROLLING


def resolve_timezone(name: str | tzinfo | None) -> tzinfo:
    # Accept tzinfo objects directly; resolve IANA names lazily and default to UTC.
    if name is None:
        return timezone.utc
    if isinstance(name, tzinfo):
        return name
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"unknown billing timezone: {name!r}") from exc


def current_period(policy: ResetPolicy, now: datetime, tz: str | tzinfo | None = None) -> QuotaPeriod:
    # Pure mapping from (policy, instant) to the accounting window.
    require_aware(now)
    if policy.kind == RESET_NONE:
        return QuotaPeriod(key=ALL_TIME_PERIOD_KEY, start=None, end=None, policy=policy)

    if policy.kind == RESET_MONTHLY:
        local_now = now.astimezone(resolve_timezone(tz))
        start = local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return QuotaPeriod(
            key=f"{start.year:04d}-{start.month:02d}",
            start=start,
            end=end,
            policy=policy,
        )

    window_days = int(policy.window_days or 0)
    return QuotaPeriod(
        key=rolling_period_key(window_days),
        start=now - timedelta(days=window_days),
        end=now,
        policy=policy,
    )


def rolling_period_key(window_days: int) -> str:
    # Rolling windows have no natural bucket; the key names the window shape.
    return f"rolling:{window_days}d"


def add_months(value: datetime, months: int) -> datetime:
    # Clamp to the target month's last day so a 31st anchor lands on Feb 28/29.
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def billing_cycle(anchor: datetime, now: datetime) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` monthly billing cycle containing ``now``.

    Cycles repeat on the anchor's day of month; every boundary is computed
    from the anchor itself so short months do not drift later cycles.
    """
    anchor = require_aware(anchor, field="anchor")
    now = require_aware(now).astimezone(anchor.tzinfo)
    if now < anchor:
        return anchor, add_months(anchor, 1)
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    start = add_months(anchor, months)
    if start > now:
        months -= 1
        start = add_months(anchor, months)
    return start, add_months(anchor, months + 1)
