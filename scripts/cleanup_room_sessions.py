from __future__ import annotations

import asyncio

from roomrender.core.logging import configure_logging
from roomrender.services.container import build_container
from roomrender.services.maintenance import run_maintenance_task


async def cleanup() -> None:
    configure_logging()
    container = build_container()
    try:
        result = await run_maintenance_task(container, "prune_expired_room_sessions")
    finally:
        await container.close()
    print(f"deleted_sessions={result['sessions_deleted']} deleted_blobs={result['blobs_deleted']}")


if __name__ == "__main__":
    asyncio.run(cleanup())
