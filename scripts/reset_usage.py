from __future__ import annotations

import argparse
import asyncio

from entitlekit.core.config import get_settings
from entitlekit.core.logging import configure_logging
from entitlekit.persistence.db import SessionLocal
from entitlekit.services.catalog import load_catalog_file
from entitlekit.services.maintenance import expire_cycle_bound_boosts
from entitlekit.services.resolver import EntitlementResolver


async def _reset(workspace_id: str, feature_codes: list[str], expire_boosts: bool, source: str) -> None:
    # Operator reset of current-period usage, optionally closing the billing cycle's boosts too.
    configure_logging()
    catalog = load_catalog_file(get_settings().catalog_path)
    resolver = EntitlementResolver(catalog)
    codes = feature_codes or [feature.code for feature in catalog.features.all() if feature.is_limit]
    async with SessionLocal() as session:
        for code in codes:
            cleared = await resolver.reset_usage(session, workspace_id, code, source=source)
            print(f"feature_code={code} cleared={cleared}")
        if expire_boosts:
            expired = await expire_cycle_bound_boosts(
                session,
                workspace_id,
                grant_store=resolver.grant_store,
                source=source,
            )
            print(f"boosts_expired={expired}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reset a workspace's usage for the current period")
    parser.add_argument("--workspace-id", required=True)
    parser.add_argument("--feature", action="append", default=[], help="Feature code; repeat for several")
    parser.add_argument("--expire-boosts", action="store_true", help="Also expire last cycle's boosts")
    parser.add_argument("--source", default="cli")
    args = parser.parse_args()
    asyncio.run(_reset(args.workspace_id, args.feature, args.expire_boosts, args.source))


if __name__ == "__main__":
    main()
