from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Any, Iterable

from entitlekit.core.errors import CatalogFileError, CatalogValidationError, CyclicPoolError
from entitlekit.domain.catalog import (
    FEATURE_TYPE_BOOLEAN,
    FEATURE_TYPES,
    RESET_KINDS,
    RESET_ROLLING,
    Feature,
    Package,
    PackageGrant,
    ResetPolicy,
)


logger = logging.getLogger(__name__)

DEFAULT_ROLLING_WINDOW_DAYS = 30


class FeatureCatalog:
    """Read-only feature definitions with pool chains validated at construction."""

    def __init__(self, features: Iterable[Feature]) -> None:
        by_code: dict[str, Feature] = {}
        for feature in features:
            if feature.code in by_code:
                raise CatalogValidationError(f"duplicate feature code: {feature.code}")
            by_code[feature.code] = feature
        self._features = by_code
        self._chains = self._build_parent_chains()

    def lookup(self, code: str) -> Feature | None:
        return self._features.get(code)

    def resolve_parent_chain(self, code: str) -> list[Feature]:
        # Ancestors ordered nearest first; empty for unknown or unpooled features.
        return list(self._chains.get(code, ()))

    def pool_chain(self, code: str) -> list[Feature]:
        feature = self._features.get(code)
        if feature is None:
            return []
        return [feature, *self._chains.get(code, ())]

    def all(self) -> list[Feature]:
        return sorted(self._features.values(), key=lambda f: (f.category, f.sort_order, f.code))

    def active(self) -> list[Feature]:
        return [feature for feature in self.all() if feature.is_active]

    def __contains__(self, code: object) -> bool:
        return code in self._features

    def __len__(self) -> int:
        return len(self._features)

    def _build_parent_chains(self) -> dict[str, tuple[Feature, ...]]:
        # Validate pool links once so request paths never walk a cycle.
        chains: dict[str, tuple[Feature, ...]] = {}
        for code, feature in self._features.items():
            path = [code]
            ancestors: list[Feature] = []
            parent_code = feature.parent_code
            while parent_code is not None:
                if parent_code in path:
                    raise CyclicPoolError(path[path.index(parent_code):] + [parent_code])
                parent = self._features.get(parent_code)
                if parent is None:
                    raise CatalogValidationError(
                        f"feature '{path[-1]}' references unknown parent '{parent_code}'"
                    )
                if parent.type == FEATURE_TYPE_BOOLEAN:
                    raise CatalogValidationError(
                        f"feature '{path[-1]}' cannot pool under boolean feature '{parent_code}'"
                    )
                ancestors.append(parent)
                path.append(parent_code)
                parent_code = parent.parent_code
            chains[code] = tuple(ancestors)
        return chains


class PackageCatalog:
    """Read-only package definitions keyed by code."""

    def __init__(self, packages: Iterable[Package], features: FeatureCatalog) -> None:
        by_code: dict[str, Package] = {}
        for package in packages:
            if package.code in by_code:
                raise CatalogValidationError(f"duplicate package code: {package.code}")
            seen: set[str] = set()
            for grant in package.grants:
                if grant.feature_code not in features:
                    raise CatalogValidationError(
                        f"package '{package.code}' grants unknown feature '{grant.feature_code}'"
                    )
                if grant.feature_code in seen:
                    raise CatalogValidationError(
                        f"package '{package.code}' grants '{grant.feature_code}' more than once"
                    )
                seen.add(grant.feature_code)
            by_code[package.code] = package
        self._packages = by_code

    def lookup(self, code: str) -> Package | None:
        return self._packages.get(code)

    def grant_for(self, package_code: str, feature_code: str) -> PackageGrant | None:
        package = self._packages.get(package_code)
        if package is None:
            return None
        return package.grant_for(feature_code)

    def all(self) -> list[Package]:
        return [self._packages[code] for code in sorted(self._packages)]

    def __len__(self) -> int:
        return len(self._packages)


class Catalog:
    """Feature and package reference data treated as immutable for a resolution cycle."""

    def __init__(self, features: Iterable[Feature], packages: Iterable[Package] = ()) -> None:
        self.features = FeatureCatalog(features)
        self.packages = PackageCatalog(packages, self.features)


class CatalogProvider:
    """Holds the current catalog and swaps it atomically on reload."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = RLock()
        self._catalog: Catalog
        self.reload()

    @property
    def catalog(self) -> Catalog:
        with self._lock:
            return self._catalog

    def reload(self) -> Catalog:
        # Parse fully before swapping so a bad file never replaces a good catalog.
        parsed = load_catalog_file(self._path)
        with self._lock:
            self._catalog = parsed
        logger.info(
            "catalog_loaded path=%s features=%s packages=%s",
            self._path,
            len(parsed.features),
            len(parsed.packages),
        )
        return parsed


def current_catalog(source: Catalog | CatalogProvider) -> Catalog:
    # Pin one catalog snapshot per operation so a concurrent reload cannot split a decision.
    if isinstance(source, CatalogProvider):
        return source.catalog
    return source


def load_catalog_file(path: str | Path) -> Catalog:
    catalog_path = Path(path)
    try:
        with catalog_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except FileNotFoundError as exc:
        raise CatalogFileError(f"catalog file not found: {catalog_path}") from exc
    except OSError as exc:
        raise CatalogFileError(f"catalog file unreadable: {catalog_path}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogValidationError(f"catalog file is not valid JSON: {catalog_path}") from exc
    return parse_catalog(raw)


def parse_catalog(raw: Any) -> Catalog:
    # Parse and validate the catalog document into immutable domain objects.
    payload = _as_dict(raw, field="catalog")
    features_raw = payload.get("features")
    if not isinstance(features_raw, list):
        raise CatalogValidationError("catalog must include a list field named 'features'")
    packages_raw = payload.get("packages", [])
    if not isinstance(packages_raw, list):
        raise CatalogValidationError("catalog 'packages' must be a list")

    features = [_parse_feature(item, index=i) for i, item in enumerate(features_raw)]
    packages = [_parse_package(item, index=i) for i, item in enumerate(packages_raw)]
    return Catalog(features, packages)


def _as_dict(value: Any, *, field: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise CatalogValidationError(f"{field} must be an object")
    return value


def _as_code(value: Any, *, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CatalogValidationError(f"{field} must be a non-empty string")
    return value.strip()


def _as_bool(value: Any, *, field: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise CatalogValidationError(f"{field} must be a boolean")
    return value


def _as_int(value: Any, *, field: str, min_value: int | None = None) -> int:
    if isinstance(value, bool):
        raise CatalogValidationError(f"{field} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise CatalogValidationError(f"{field} must be an integer") from exc
    if min_value is not None and parsed < min_value:
        raise CatalogValidationError(f"{field} must be >= {min_value}")
    return parsed


def _parse_reset_policy(item: dict[str, Any], *, field: str) -> ResetPolicy:
    kind = item.get("reset_policy", "none")
    if not isinstance(kind, str) or kind not in RESET_KINDS:
        raise CatalogValidationError(f"{field}.reset_policy must be one of: {', '.join(sorted(RESET_KINDS))}")
    if kind == RESET_ROLLING:
        window = item.get("rolling_window_days", DEFAULT_ROLLING_WINDOW_DAYS)
        return ResetPolicy.rolling(_as_int(window, field=f"{field}.rolling_window_days", min_value=1))
    if item.get("rolling_window_days") is not None:
        raise CatalogValidationError(f"{field}.rolling_window_days requires reset_policy 'rolling'")
    return ResetPolicy(kind)


def _parse_feature(raw: Any, *, index: int) -> Feature:
    field = f"features[{index}]"
    item = _as_dict(raw, field=field)
    code = _as_code(item.get("code"), field=f"{field}.code")
    feature_type = item.get("type")
    if not isinstance(feature_type, str) or feature_type not in FEATURE_TYPES:
        raise CatalogValidationError(f"{field}.type must be one of: {', '.join(sorted(FEATURE_TYPES))}")
    parent = item.get("parent")
    parent_code = None if parent is None else _as_code(parent, field=f"{field}.parent")
    return Feature(
        code=code,
        type=feature_type,
        name=str(item.get("name") or ""),
        reset_policy=_parse_reset_policy(item, field=field),
        parent_code=parent_code,
        is_active=_as_bool(item.get("is_active"), field=f"{field}.is_active", default=True),
        category=str(item.get("category") or "general"),
        sort_order=_as_int(item.get("sort_order", 0), field=f"{field}.sort_order"),
    )


def _parse_grant(raw: Any, *, field: str) -> PackageGrant:
    # Accept bare feature codes as shorthand for grants without a limit.
    if isinstance(raw, str):
        return PackageGrant(feature_code=_as_code(raw, field=field))
    item = _as_dict(raw, field=field)
    limit = item.get("limit")
    return PackageGrant(
        feature_code=_as_code(item.get("code"), field=f"{field}.code"),
        limit=None if limit is None else _as_int(limit, field=f"{field}.limit", min_value=0),
    )


def _parse_package(raw: Any, *, index: int) -> Package:
    field = f"packages[{index}]"
    item = _as_dict(raw, field=field)
    grants_raw = item.get("features", [])
    if not isinstance(grants_raw, list):
        raise CatalogValidationError(f"{field}.features must be a list")
    return Package(
        code=_as_code(item.get("code"), field=f"{field}.code"),
        name=str(item.get("name") or ""),
        is_base_package=_as_bool(item.get("is_base_package"), field=f"{field}.is_base_package", default=False),
        is_stackable=_as_bool(item.get("is_stackable"), field=f"{field}.is_stackable", default=False),
        is_active=_as_bool(item.get("is_active"), field=f"{field}.is_active", default=True),
        is_public=_as_bool(item.get("is_public"), field=f"{field}.is_public", default=True),
        grants=tuple(
            _parse_grant(grant, field=f"{field}.features[{i}]") for i, grant in enumerate(grants_raw)
        ),
    )
