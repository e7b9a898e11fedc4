from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from roomrender.apps.api.deps import get_container, require_cron_secret
from roomrender.apps.api.openapi import CRON_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.services import maintenance
from roomrender.services.container import ServiceContainer


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    responses=CRON_ERROR_RESPONSES,
    dependencies=[Depends(require_cron_secret)],
)


class PruneResponse(BaseModel):
    events_deleted: int
    artifacts_deleted: int
    blobs_deleted: int
    artifacts_skipped: int
    errors: list[str]


class SessionCleanupResponse(BaseModel):
    sessions_deleted: int
    blobs_deleted: int
    errors: list[str]


@router.post("/prune-telemetry", response_model=SuccessEnvelope[PruneResponse])
async def prune_telemetry(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Partial failures are reported in the body; the call itself succeeds.
    result = await maintenance.prune_telemetry(container)
    return success_response(request=request, data=PruneResponse(**result.as_dict()))


@router.post("/cleanup-sessions", response_model=SuccessEnvelope[SessionCleanupResponse])
async def cleanup_sessions(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    result = await maintenance.prune_expired_room_sessions(container)
    return success_response(request=request, data=SessionCleanupResponse(**result.as_dict()))
