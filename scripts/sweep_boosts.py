from __future__ import annotations

import argparse
import asyncio

from entitlekit.core.logging import configure_logging
from entitlekit.services.worker import run_boost_sweep_cycle, run_boost_sweep_loop


async def _main(loop: bool) -> None:
    # Persist expired boost statuses once, or keep sweeping as a dedicated worker process.
    configure_logging()
    if loop:
        await run_boost_sweep_loop()
        return
    outcome = await run_boost_sweep_cycle()
    print(f"status={outcome['status']}")
    print(f"boosts_expired={outcome['boosts_expired']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Mark lapsed boosts as expired")
    parser.add_argument("--loop", action="store_true", help="Run continuously on the configured interval")
    args = parser.parse_args()
    asyncio.run(_main(args.loop))


if __name__ == "__main__":
    main()
