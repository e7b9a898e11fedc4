from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from roomrender.apps.api.deps import get_container, get_current_shop, request_id
from roomrender.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.domain.models import Shop
from roomrender.services import assets
from roomrender.services.container import ServiceContainer


router = APIRouter(prefix="/assets", tags=["assets"], responses=DEFAULT_ERROR_RESPONSES)


class PrepareResponse(BaseModel):
    asset_id: str
    status: str


class BatchPrepareRequest(BaseModel):
    model_config = {"extra": "forbid"}

    product_ids: list[str] = Field(min_length=1, max_length=assets.MAX_BATCH_SIZE)


class BatchItemErrorResponse(BaseModel):
    product_id: str
    error: str


class BatchPrepareResponse(BaseModel):
    queued: int
    asset_ids: list[str]
    errors: list[BatchItemErrorResponse]


class AssetResponse(BaseModel):
    asset_id: str
    product_id: str
    status: str
    enabled: bool
    prepared_image_ref: str | None
    prepared_image_version: int
    retry_count: int
    error: str | None


class EnabledRequest(BaseModel):
    model_config = {"extra": "forbid"}

    enabled: bool


class InstructionsRequest(BaseModel):
    model_config = {"extra": "forbid"}

    render_instructions: str | None = Field(default=None, max_length=2000)
    placement_hints: dict[str, Any] | None = None


def _to_response(view: assets.AssetStatusView) -> AssetResponse:
    return AssetResponse(
        asset_id=view.asset_id,
        product_id=view.product_id,
        status=view.status,
        enabled=view.enabled,
        prepared_image_ref=view.prepared_image_ref,
        prepared_image_version=view.prepared_image_version,
        retry_count=view.retry_count,
        error=view.error,
    )


@router.post("/batch-prepare", response_model=SuccessEnvelope[BatchPrepareResponse], status_code=202)
async def batch_prepare(
    payload: BatchPrepareRequest,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
    req_id: str = Depends(request_id),
) -> dict:
    # Quota for the whole batch is reserved before any item is queued.
    result = await assets.batch_prepare(container, shop, payload.product_ids, request_id=req_id)
    data = BatchPrepareResponse(
        queued=result.queued,
        asset_ids=result.asset_ids,
        errors=[BatchItemErrorResponse(product_id=e.product_id, error=e.error) for e in result.errors],
    )
    return success_response(request=request, data=data)


@router.post("/{product_id}/prepare", response_model=SuccessEnvelope[PrepareResponse], status_code=202)
async def prepare_asset(
    product_id: str,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
    req_id: str = Depends(request_id),
) -> dict:
    result = await assets.prepare_asset(container, shop, product_id, request_id=req_id)
    return success_response(request=request, data=PrepareResponse(asset_id=result.asset_id, status=result.status))


@router.get("/{product_id}", response_model=SuccessEnvelope[AssetResponse])
async def get_asset(
    product_id: str,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    view = await assets.get_asset_status(container, shop, product_id)
    return success_response(request=request, data=_to_response(view))


@router.post("/{product_id}/enabled", response_model=SuccessEnvelope[AssetResponse])
async def set_enabled(
    product_id: str,
    payload: EnabledRequest,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    view = await assets.set_enabled(container, shop, product_id, payload.enabled)
    return success_response(request=request, data=_to_response(view))


@router.put("/{product_id}/instructions", response_model=SuccessEnvelope[AssetResponse])
async def update_instructions(
    product_id: str,
    payload: InstructionsRequest,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    view = await assets.update_render_instructions(
        container,
        shop,
        product_id,
        payload.render_instructions,
        placement_hints=payload.placement_hints,
    )
    return success_response(request=request, data=_to_response(view))
