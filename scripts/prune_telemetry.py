from __future__ import annotations

import asyncio

from roomrender.core.logging import configure_logging
from roomrender.services.container import build_container
from roomrender.services.maintenance import run_maintenance_task


async def prune() -> None:
    configure_logging()
    container = build_container()
    try:
        result = await run_maintenance_task(container, "prune_telemetry")
    finally:
        await container.close()
    print(
        f"pruned_events={result['events_deleted']} pruned_artifacts={result['artifacts_deleted']} "
        f"skipped_artifacts={result['artifacts_skipped']} errors={len(result['errors'])}"
    )


if __name__ == "__main__":
    asyncio.run(prune())
