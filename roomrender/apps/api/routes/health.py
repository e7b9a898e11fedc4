from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text

from roomrender.apps.api.deps import get_container
from roomrender.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.services.container import ServiceContainer
from roomrender.services.queue import get_worker_heartbeat

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    execution_mode: str
    worker_heartbeat_at: datetime | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, container: ServiceContainer = Depends(get_container)) -> dict:
    # Report degraded instead of failing so load balancers can tell which dependency is down.
    database = "ok"
    try:
        async with container.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001 - health reports dependency state instead of raising
        database = "unavailable"
    heartbeat = await get_worker_heartbeat(container)
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        execution_mode=container.settings.execution_mode,
        worker_heartbeat_at=heartbeat,
    )
    return success_response(request=request, data=payload)
