from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from roomrender.core.config import get_settings
from roomrender.core.logging import configure_logging
from roomrender.services import assets, composite, rooms
from roomrender.services.container import ServiceContainer, build_container
from roomrender.services.queue import TaskPayload, run_task as dispatch_task, set_worker_heartbeat


logger = logging.getLogger(__name__)


async def run_task(ctx, payload: dict) -> str:
    # Parse and validate payloads in the worker to enforce schema contracts.
    task_payload = TaskPayload.model_validate(payload)
    await dispatch_task(ctx["container"], task_payload)
    return task_payload.task


async def _heartbeat_loop(container: ServiceContainer) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    interval_s = max(1, int(container.settings.worker_heartbeat_interval_s))
    while True:
        try:
            await set_worker_heartbeat(container)
        except Exception:  # noqa: BLE001 - a missed heartbeat must not stop the worker
            logger.exception("worker_heartbeat_failed")
        await asyncio.sleep(interval_s)


async def poll_once(container: ServiceContainer) -> int:
    """Drive every claimable asset, job and stale run found in one pass.

    Claims are conditional updates, so overlapping workers and queue
    deliveries for the same entity are harmless.
    """
    batch = max(1, int(container.settings.worker_poll_batch_size))
    asset_ids = await assets.list_claimable_assets(container, limit=batch)
    job_ids = await rooms.list_claimable_jobs(container, limit=batch)
    run_ids = await composite.list_stale_runs(container, limit=batch)
    work = [assets.process_asset(container, asset_id) for asset_id in asset_ids]
    work += [rooms.process_job(container, job_id) for job_id in job_ids]
    work += [composite.execute_run(container, run_id) for run_id in run_ids]
    if not work:
        return 0
    results = await asyncio.gather(*work, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error("worker_poll_item_failed error=%s", result)
    return len(work)


async def _poll_loop(container: ServiceContainer) -> None:
    # Recover work whose queue message was lost or whose worker died mid-flight.
    interval_s = max(1, int(container.settings.worker_poll_interval_s))
    while True:
        try:
            picked = await poll_once(container)
            if picked:
                logger.info("worker_poll_picked count=%s", picked)
        except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in worker logs
            logger.exception("worker_poll_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    # Build the composition root once per worker process.
    configure_logging()
    container = build_container()
    ctx["container"] = container
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(container))
    ctx["poll_task"] = asyncio.create_task(_poll_loop(container))


async def _shutdown(ctx) -> None:
    # Cancel background loops to avoid dangling coroutines on exit.
    for key in ("heartbeat_task", "poll_task"):
        task = ctx.get(key)
        if task:
            task.cancel()
    container = ctx.get("container")
    if container is not None:
        await container.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.render_queue_name
    # Entity state lives in the database; the poll loop re-drives failures.
    max_tries = 1
    # Drop finished job keys so the same entity can be queued again.
    keep_result = 0
    job_timeout = 600
    functions = [run_task]
    on_startup = _startup
    on_shutdown = _shutdown
