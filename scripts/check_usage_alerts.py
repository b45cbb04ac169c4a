from __future__ import annotations

import argparse
import asyncio

from entitlekit.core.config import get_settings
from entitlekit.core.logging import configure_logging
from entitlekit.persistence.db import SessionLocal
from entitlekit.services.catalog import load_catalog_file
from entitlekit.services.resolver import EntitlementResolver
from entitlekit.services.usage_alerts import UsageAlertService


async def _check(workspace_id: str | None) -> None:
    # Send threshold alerts for one workspace, or for every workspace holding a package.
    configure_logging()
    resolver = EntitlementResolver(load_catalog_file(get_settings().catalog_path))
    alerts = UsageAlertService(resolver)
    async with SessionLocal() as session:
        if workspace_id:
            outcome = await alerts.check_workspace(session, workspace_id)
            print(f"alerts_sent={outcome.alerts_sent} alerts_resolved={outcome.alerts_resolved}")
            for detail in outcome.details:
                print(f"feature_code={detail.feature_code} threshold={detail.threshold} resolved={detail.resolved}")
            return
        stats = await alerts.check_all_workspaces(session)
    print(f"checked={stats['checked']} alerts_sent={stats['alerts_sent']} alerts_resolved={stats['alerts_resolved']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Check quota usage and send threshold alerts")
    parser.add_argument("--workspace-id", help="Check a single workspace")
    args = parser.parse_args()
    asyncio.run(_check(args.workspace_id))


if __name__ == "__main__":
    main()
