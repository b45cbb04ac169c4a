"""Tagged-variant allowance and its merge operator.

Every grant source (package feature, boost) is mapped to one of three
variants and folded with :func:`merge`. The operator is total, associative
and commutative, so the stacking policy is one pure function:

    Unlimited + x          = Unlimited
    Limited(a) + Limited(b) = Limited(a + b)
    Boolean + Boolean      = Boolean
    Boolean + Limited(n)   = Limited(n)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union


@dataclass(frozen=True)
class BooleanAllowance:
    # Entitled with no numeric headroom of its own.
    pass


@dataclass(frozen=True)
class Limited:
    amount: int

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("limited allowance cannot be negative")


@dataclass(frozen=True)
class Unlimited:
    pass


Allowance = Union[BooleanAllowance, Limited, Unlimited]

BOOLEAN = BooleanAllowance()
UNLIMITED = Unlimited()


def merge(left: Allowance, right: Allowance) -> Allowance:
    # Highest privilege wins; numeric limits stack additively.
    if isinstance(left, Unlimited) or isinstance(right, Unlimited):
        return UNLIMITED
    if isinstance(left, Limited) and isinstance(right, Limited):
        return Limited(left.amount + right.amount)
    if isinstance(left, Limited):
        return left
    if isinstance(right, Limited):
        return right
    return BOOLEAN


def merge_all(allowances: Iterable[Allowance]) -> Allowance | None:
    # None means no source granted the feature at all.
    merged: Allowance | None = None
    for allowance in allowances:
        merged = allowance if merged is None else merge(merged, allowance)
        if isinstance(merged, Unlimited):
            return merged
    return merged


def numeric_limit(allowance: Allowance | None) -> int | None:
    # Boolean-only entitlement on a quota feature carries zero headroom.
    if allowance is None or isinstance(allowance, Unlimited):
        return None
    if isinstance(allowance, Limited):
        return allowance.amount
    return 0
