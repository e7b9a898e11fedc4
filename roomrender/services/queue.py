from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Literal

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from roomrender.services.container import ServiceContainer


logger = logging.getLogger(__name__)

# Keep heartbeat key stable for health endpoint lookups.
WORKER_HEARTBEAT_KEY = "roomrender:worker:heartbeat"
# Single arq entrypoint; the payload names the task.
WORKER_FUNCTION = "run_task"

TaskName = Literal["prepare_asset", "render_job", "composite_run"]

_pool_lock = asyncio.Lock()


class TaskPayload(BaseModel):
    # Match the published job schema for API-to-worker handoff.
    task: TaskName
    entity_id: str
    request_id: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_inline(container: ServiceContainer) -> bool:
    return container.settings.execution_mode.lower() == "inline"


async def get_redis_pool(container: ServiceContainer):
    # The pool belongs to the container so each process/loop owns its own.
    if container.redis_pool is not None:
        return container.redis_pool
    async with _pool_lock:
        if container.redis_pool is None:
            settings = container.settings
            container.redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.render_queue_name,
            )
    return container.redis_pool


async def enqueue_task(container: ServiceContainer, payload: TaskPayload) -> str:
    # Stable job ids let arq drop duplicate submissions for the same entity.
    job_id = f"{payload.task}:{payload.entity_id}"
    if _is_inline(container):
        await run_task(container, payload)
        return job_id
    redis = await get_redis_pool(container)
    job = await redis.enqueue_job(
        WORKER_FUNCTION,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=container.settings.render_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def run_task(container: ServiceContainer, payload: TaskPayload) -> None:
    # Shared by the arq worker and inline mode so both execute identical code.
    from roomrender.services import assets, composite, rooms

    logger.info("task_started task=%s entity_id=%s", payload.task, payload.entity_id)
    if payload.task == "prepare_asset":
        await assets.process_asset(container, payload.entity_id)
    elif payload.task == "render_job":
        await rooms.process_job(container, payload.entity_id)
    elif payload.task == "composite_run":
        await composite.execute_run(container, payload.entity_id)
    else:
        raise ValueError(f"Unknown task: {payload.task}")


async def set_worker_heartbeat(container: ServiceContainer, *, timestamp: datetime | None = None) -> None:
    if _is_inline(container):
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    redis = await get_redis_pool(container)
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat(container: ServiceContainer) -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _is_inline(container):
        return None
    try:
        redis = await get_redis_pool(container)
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - health endpoint handles degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
