from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from roomrender.apps.api.deps import get_container, get_current_shop, request_id
from roomrender.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.apps.api.routes.rooms import JobCreatedResponse
from roomrender.domain.models import Shop
from roomrender.services import rooms
from roomrender.services.container import ServiceContainer


router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


class RenderJobRequest(BaseModel):
    model_config = {"extra": "forbid"}

    product_id: str = Field(min_length=1)
    room_session_id: str = Field(min_length=1)
    style_hint: str | None = Field(default=None, max_length=500)


class JobResponse(BaseModel):
    job_id: str
    kind: str
    status: str
    image_ref: str | None
    error: str | None
    error_code: str | None


@router.post("/render", response_model=SuccessEnvelope[JobCreatedResponse], status_code=202)
async def create_render_job(
    payload: RenderJobRequest,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
    req_id: str = Depends(request_id),
) -> dict:
    job_id = await rooms.create_render_job(
        container,
        shop,
        product_id=payload.product_id,
        session_id=payload.room_session_id,
        style_hint=payload.style_hint,
        request_id=req_id,
    )
    return success_response(request=request, data=JobCreatedResponse(job_id=job_id))


@router.get("/{job_id}", response_model=SuccessEnvelope[JobResponse])
async def poll_job(
    job_id: str,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    view = await rooms.poll_job(container, shop, job_id)
    data = JobResponse(
        job_id=view.job_id,
        kind=view.kind,
        status=view.status,
        image_ref=view.image_ref,
        error=view.error,
        error_code=view.error_code,
    )
    return success_response(request=request, data=data)
