from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


FeatureType = Literal["boolean", "limit", "unlimited"]
ResetKind = Literal["none", "monthly", "rolling"]

FEATURE_TYPE_BOOLEAN = "boolean"
FEATURE_TYPE_LIMIT = "limit"
FEATURE_TYPE_UNLIMITED = "unlimited"
FEATURE_TYPES = {FEATURE_TYPE_BOOLEAN, FEATURE_TYPE_LIMIT, FEATURE_TYPE_UNLIMITED}

RESET_NONE = "none"
RESET_MONTHLY = "monthly"
RESET_ROLLING = "rolling"
RESET_KINDS = {RESET_NONE, RESET_MONTHLY, RESET_ROLLING}


@dataclass(frozen=True)
class ResetPolicy:
    # Describe when a feature's quota rolls over; rolling windows carry their length.
    kind: ResetKind = RESET_NONE
    window_days: int | None = None

    def __post_init__(self) -> None:
        if self.kind not in RESET_KINDS:
            raise ValueError(f"unknown reset policy: {self.kind!r}")
        if self.kind == RESET_ROLLING:
            if self.window_days is None or self.window_days < 1:
                raise ValueError("rolling reset policy requires window_days >= 1")
        elif self.window_days is not None:
            raise ValueError("window_days is only valid for rolling reset policies")

    @classmethod
    def none(cls) -> ResetPolicy:
        return cls(RESET_NONE)

    @classmethod
    def monthly(cls) -> ResetPolicy:
        return cls(RESET_MONTHLY)

    @classmethod
    def rolling(cls, window_days: int) -> ResetPolicy:
        return cls(RESET_ROLLING, window_days)

    @property
    def uses_event_storage(self) -> bool:
        # Sliding windows need per-event timestamps; fixed periods use a single counter.
        return self.kind == RESET_ROLLING


@dataclass(frozen=True)
class Feature:
    """A named capability; ``code`` is the immutable identity."""

    code: str
    type: FeatureType
    name: str = ""
    reset_policy: ResetPolicy = field(default_factory=ResetPolicy.none)
    parent_code: str | None = None
    is_active: bool = True
    category: str = "general"
    sort_order: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.code

    @property
    def is_boolean(self) -> bool:
        return self.type == FEATURE_TYPE_BOOLEAN

    @property
    def is_limit(self) -> bool:
        return self.type == FEATURE_TYPE_LIMIT

    @property
    def is_unlimited(self) -> bool:
        return self.type == FEATURE_TYPE_UNLIMITED


@dataclass(frozen=True)
class PackageGrant:
    # A limit of None on a limit-type feature means unlimited through this package.
    feature_code: str
    limit: int | None = None


@dataclass(frozen=True)
class Package:
    """A sellable bundle of feature grants (a base plan or an addon)."""

    code: str
    name: str = ""
    is_base_package: bool = False
    is_stackable: bool = False
    is_active: bool = True
    is_public: bool = True
    grants: tuple[PackageGrant, ...] = ()

    def grant_for(self, feature_code: str) -> PackageGrant | None:
        for grant in self.grants:
            if grant.feature_code == feature_code:
                return grant
        return None
