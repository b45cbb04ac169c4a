from __future__ import annotations


class EntitlementError(Exception):
    """Base error for the entitlement engine."""


class CatalogError(EntitlementError):
    """Feature/package catalog could not be loaded; fatal at boot."""


class CatalogFileError(CatalogError):
    """Catalog data file is missing or unreadable."""


class CatalogValidationError(CatalogError, ValueError):
    """Catalog document is malformed or internally inconsistent."""


class CyclicPoolError(CatalogError):
    """Feature parent links form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__("cyclic feature pool: " + " -> ".join(cycle))


class ConcurrencyConflict(EntitlementError):
    """A capped atomic increment lost a race and would exceed its cap."""


class UnknownPackageError(EntitlementError):
    """Package code is not in the catalog or is no longer sellable."""


class BoostValidationError(EntitlementError, ValueError):
    """Boost attributes do not describe a valid grant."""


class DatabaseError(EntitlementError):
    """Database layer failure."""
