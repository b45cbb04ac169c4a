from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitlekit.domain.catalog import ResetPolicy
from entitlekit.services.periods import ALL_TIME_PERIOD_KEY, add_months, billing_cycle, current_period


def test_none_policy_uses_single_all_time_period() -> None:
    period = current_period(ResetPolicy.none(), datetime(2026, 1, 5, tzinfo=timezone.utc))
    later = current_period(ResetPolicy.none(), datetime(2031, 7, 9, tzinfo=timezone.utc))
    assert period.key == ALL_TIME_PERIOD_KEY
    assert later.key == period.key
    assert period.start is None and period.end is None


def test_monthly_keys_match_within_calendar_month() -> None:
    first = current_period(ResetPolicy.monthly(), datetime(2026, 2, 1, 0, 0, tzinfo=timezone.utc))
    last = current_period(ResetPolicy.monthly(), datetime(2026, 2, 28, 23, 59, 59, tzinfo=timezone.utc))
    next_month = current_period(ResetPolicy.monthly(), datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc))
    assert first.key == last.key == "2026-02"
    assert next_month.key == "2026-03"
    assert first.start == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert first.end == datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_monthly_period_rolls_over_year_end() -> None:
    period = current_period(ResetPolicy.monthly(), datetime(2026, 12, 31, 18, 0, tzinfo=timezone.utc))
    assert period.key == "2026-12"
    assert period.end == datetime(2027, 1, 1, tzinfo=timezone.utc)


def test_monthly_period_follows_billing_timezone() -> None:
    # 23:30 UTC on Jan 31st is already February in Auckland.
    now = datetime(2026, 1, 31, 23, 30, tzinfo=timezone.utc)
    assert current_period(ResetPolicy.monthly(), now).key == "2026-01"
    local = current_period(ResetPolicy.monthly(), now, "Pacific/Auckland")
    assert local.key == "2026-02"
    assert local.start.utcoffset() == timedelta(hours=13)


def test_rolling_window_spans_preceding_days() -> None:
    now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    period = current_period(ResetPolicy.rolling(7), now)
    assert period.key == "rolling:7d"
    assert period.is_rolling is True
    assert period.end == now
    assert period.start == now - timedelta(days=7)


def test_naive_now_is_rejected() -> None:
    with pytest.raises(ValueError):
        current_period(ResetPolicy.monthly(), datetime(2026, 3, 15, 12, 0))


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValueError):
        current_period(ResetPolicy.monthly(), datetime(2026, 3, 15, tzinfo=timezone.utc), "Mars/Olympus")


def test_reset_policy_validates_window() -> None:
    with pytest.raises(ValueError):
        ResetPolicy.rolling(0)
    with pytest.raises(ValueError):
        ResetPolicy("monthly", 30)
    assert ResetPolicy.rolling(30).uses_event_storage is True
    assert ResetPolicy.monthly().uses_event_storage is False


def test_add_months_clamps_to_short_months() -> None:
    anchor = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert add_months(anchor, 1) == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)
    assert add_months(anchor, 2) == datetime(2026, 3, 31, 9, 30, tzinfo=timezone.utc)
    assert add_months(anchor, 13) == datetime(2027, 2, 28, 9, 30, tzinfo=timezone.utc)
    assert add_months(datetime(2028, 1, 31, tzinfo=timezone.utc), 1).day == 29


def test_billing_cycle_follows_anchor_day_without_drift() -> None:
    anchor = datetime(2026, 1, 31, tzinfo=timezone.utc)
    start, end = billing_cycle(anchor, datetime(2026, 3, 10, tzinfo=timezone.utc))
    assert start == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 31, tzinfo=timezone.utc)

    start, end = billing_cycle(anchor, datetime(2026, 3, 31, tzinfo=timezone.utc))
    assert start == datetime(2026, 3, 31, tzinfo=timezone.utc)
    assert end == datetime(2026, 4, 30, tzinfo=timezone.utc)


def test_billing_cycle_before_anchor_is_first_cycle() -> None:
    anchor = datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)
    assert billing_cycle(anchor, datetime(2026, 5, 1, tzinfo=timezone.utc)) == (
        anchor,
        datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc),
    )


def test_billing_cycle_rejects_naive_datetimes() -> None:
    with pytest.raises(ValueError):
        billing_cycle(datetime(2026, 1, 1), datetime(2026, 2, 1, tzinfo=timezone.utc))
