from __future__ import annotations

import asyncio

from entitlekit.core.logging import configure_logging
from entitlekit.services.worker import run_usage_prune_cycle


async def prune() -> None:
    configure_logging()
    outcome = await run_usage_prune_cycle()
    print(f"status={outcome['status']}")
    print(f"pruned_usage_events={outcome['usage_events_deleted']}")


if __name__ == "__main__":
    asyncio.run(prune())
