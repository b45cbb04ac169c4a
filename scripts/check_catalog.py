from __future__ import annotations

import argparse
import sys

from entitlekit.core.config import get_settings
from entitlekit.core.errors import CatalogError
from entitlekit.services.catalog import load_catalog_file


def main() -> int:
    # Validate a catalog file before deploying it; exits non-zero on any load error.
    parser = argparse.ArgumentParser(description="Validate the feature/package catalog")
    parser.add_argument("path", nargs="?", default=None)
    args = parser.parse_args()
    path = args.path or get_settings().catalog_path
    try:
        catalog = load_catalog_file(path)
    except CatalogError as exc:
        print(f"catalog_invalid path={path} error={exc}", file=sys.stderr)
        return 1
    print(f"catalog_ok path={path} features={len(catalog.features)} packages={len(catalog.packages)}")
    for feature in catalog.features.all():
        chain = " -> ".join(f.code for f in catalog.features.pool_chain(feature.code))
        print(f"  {feature.code} type={feature.type} reset={feature.reset_policy.kind} pool={chain}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
