from __future__ import annotations

from entitlekit.domain.results import (
    REASON_LIMIT_EXCEEDED,
    REASON_NOT_ENTITLED,
    allowed,
    denied,
    unlimited,
)


def test_allowed_result_computes_remaining() -> None:
    result = allowed(limit=10, used=4, feature_code="bio.pages")
    assert result.allowed is True
    assert result.remaining == 6
    assert result.reason is None
    assert result.is_denied is False


def test_denied_result_clamps_remaining_and_keeps_reason() -> None:
    result = denied(REASON_LIMIT_EXCEEDED, "bio.pages", limit=10, used=12)
    assert result.allowed is False
    assert result.remaining == 0
    assert result.reason == REASON_LIMIT_EXCEEDED

    flat = denied(REASON_NOT_ENTITLED, "support.priority")
    assert flat.limit is None and flat.remaining is None


def test_unlimited_result_carries_no_figures() -> None:
    result = unlimited("storage.assets")
    assert result.allowed is True
    assert result.unlimited is True
    assert (result.limit, result.used, result.remaining) == (None, None, None)
    assert result.usage_percentage() is None
    assert result.is_near_limit() is False


def test_usage_percentage_and_near_limit() -> None:
    assert allowed(limit=10, used=5, feature_code="f").usage_percentage() == 50.0
    assert allowed(limit=10, used=8, feature_code="f").is_near_limit() is True
    assert allowed(limit=10, used=7, feature_code="f").is_near_limit() is False
    assert allowed(limit=10, used=7, feature_code="f").is_near_limit(0.5) is True
    # Zero-limit quotas read as fully used.
    assert denied(REASON_LIMIT_EXCEEDED, "f", limit=0, used=0).usage_percentage() == 100.0


def test_to_dict_round_trips_fields() -> None:
    payload = allowed(limit=15, used=10, feature_code="bio.pages").to_dict()
    assert payload == {
        "allowed": True,
        "unlimited": False,
        "limit": 15,
        "used": 10,
        "remaining": 5,
        "reason": None,
        "feature_code": "bio.pages",
    }
