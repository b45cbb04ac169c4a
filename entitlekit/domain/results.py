from __future__ import annotations

from dataclasses import dataclass
from typing import Any


REASON_FEATURE_UNKNOWN = "feature_unknown"
REASON_NOT_ENTITLED = "not_entitled"
REASON_LIMIT_EXCEEDED = "limit_exceeded"

DEFAULT_NEAR_LIMIT_RATIO = 0.8


@dataclass(frozen=True)
class EntitlementResult:
    """Verdict for one (workspace, feature) query.

    Denials are data, not exceptions: callers branch on ``allowed`` and surface
    ``reason``. ``limit``/``used``/``remaining`` are only populated for
    quota-bound features; unlimited results carry none of them.
    """

    allowed: bool
    feature_code: str
    unlimited: bool = False
    limit: int | None = None
    used: int | None = None
    remaining: int | None = None
    reason: str | None = None

    @classmethod
    def allowed_result(
        cls,
        feature_code: str,
        limit: int | None = None,
        used: int | None = None,
    ) -> EntitlementResult:
        remaining = None if limit is None else limit - (used or 0)
        return cls(
            allowed=True,
            feature_code=feature_code,
            limit=limit,
            used=used,
            remaining=remaining,
        )

    @classmethod
    def denied(
        cls,
        reason: str,
        feature_code: str,
        limit: int | None = None,
        used: int | None = None,
    ) -> EntitlementResult:
        remaining = None if limit is None else max(limit - (used or 0), 0)
        return cls(
            allowed=False,
            feature_code=feature_code,
            limit=limit,
            used=used,
            remaining=remaining,
            reason=reason,
        )

    @classmethod
    def unlimited_result(cls, feature_code: str) -> EntitlementResult:
        return cls(allowed=True, feature_code=feature_code, unlimited=True)

    @property
    def is_denied(self) -> bool:
        return not self.allowed

    def usage_percentage(self) -> float | None:
        # Zero-limit quotas read as fully used so alerting treats them as exhausted.
        if self.unlimited or self.limit is None:
            return None
        if self.limit <= 0:
            return 100.0
        return min((self.used or 0) / self.limit * 100.0, 100.0)

    def is_near_limit(self, ratio: float = DEFAULT_NEAR_LIMIT_RATIO) -> bool:
        percentage = self.usage_percentage()
        if percentage is None:
            return False
        return percentage >= ratio * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "unlimited": self.unlimited,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "reason": self.reason,
            "feature_code": self.feature_code,
        }


# Module-level constructors; the classmethods are suffixed to avoid clashing with field names.
def allowed(limit: int | None = None, used: int | None = None, feature_code: str = "") -> EntitlementResult:
    return EntitlementResult.allowed_result(feature_code, limit=limit, used=used)


def denied(
    reason: str,
    feature_code: str,
    limit: int | None = None,
    used: int | None = None,
) -> EntitlementResult:
    return EntitlementResult.denied(reason, feature_code, limit=limit, used=used)


def unlimited(feature_code: str) -> EntitlementResult:
    return EntitlementResult.unlimited_result(feature_code)
