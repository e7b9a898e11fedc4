from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from roomrender.apps.api.deps import get_container, get_current_shop, request_id
from roomrender.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.domain.models import Shop
from roomrender.services import composite, monitor
from roomrender.services.container import ServiceContainer


router = APIRouter(prefix="/runs", tags=["runs"], responses=DEFAULT_ERROR_RESPONSES)


class CreateRunRequest(BaseModel):
    model_config = {"extra": "forbid"}

    product_id: str = Field(min_length=1)
    room_session_id: str = Field(min_length=1)
    # Validated by the run engine so spec errors share one error shape.
    variants: list[dict[str, Any]]


class RunCreatedResponse(BaseModel):
    run_id: str
    status: str
    variant_ids: list[str]


class VariantResponse(BaseModel):
    variant_id: str
    status: str
    latency_ms: int | None
    error_code: str | None
    error_message: str | None
    image_ref: str | None


class RunDetailResponse(BaseModel):
    run_id: str
    status: str
    product_id: str | None
    room_session_id: str | None
    variants: list[VariantResponse]
    success_count: int
    fail_count: int
    timeout_count: int
    created_at: datetime
    completed_at: datetime | None
    total_duration_ms: int | None


class RunSummaryResponse(BaseModel):
    run_id: str
    status: str
    requested: int
    success_count: int
    created_at: datetime
    total_duration_ms: int | None


class RunEventResponse(BaseModel):
    event_id: str
    ts: datetime
    type: str
    source: str
    severity: str
    variant_id: str | None
    request_id: str | None
    payload: dict[str, Any] | None
    overflow_artifact_id: str | None


@router.post("", response_model=SuccessEnvelope[RunCreatedResponse], status_code=202)
async def create_run(
    payload: CreateRunRequest,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
    req_id: str = Depends(request_id),
) -> dict:
    created = await composite.create_composite_run(
        container,
        shop,
        product_id=payload.product_id,
        room_session_id=payload.room_session_id,
        variant_specs=payload.variants,
        request_id=req_id,
    )
    data = RunCreatedResponse(run_id=created.run_id, status=created.status, variant_ids=created.variant_ids)
    return success_response(request=request, data=data)


@router.get("", response_model=SuccessEnvelope[list[RunSummaryResponse]])
async def list_runs(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    summaries = await composite.list_runs(container, shop, limit=limit)
    data = [
        RunSummaryResponse(
            run_id=item.run_id,
            status=item.status,
            requested=item.requested,
            success_count=item.success_count,
            created_at=item.created_at,
            total_duration_ms=item.total_duration_ms,
        )
        for item in summaries
    ]
    return success_response(request=request, data=data)


@router.get("/{run_id}", response_model=SuccessEnvelope[RunDetailResponse])
async def get_run(
    run_id: str,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    detail = await composite.get_run_detail(container, shop, run_id)
    data = RunDetailResponse(
        run_id=detail.run_id,
        status=detail.status,
        product_id=detail.product_id,
        room_session_id=detail.room_session_id,
        variants=[
            VariantResponse(
                variant_id=v.variant_id,
                status=v.status,
                latency_ms=v.latency_ms,
                error_code=v.error_code,
                error_message=v.error_message,
                image_ref=v.image_ref,
            )
            for v in detail.variants
        ],
        success_count=detail.success_count,
        fail_count=detail.fail_count,
        timeout_count=detail.timeout_count,
        created_at=detail.created_at,
        completed_at=detail.completed_at,
        total_duration_ms=detail.total_duration_ms,
    )
    return success_response(request=request, data=data)


@router.get("/{run_id}/events", response_model=SuccessEnvelope[list[RunEventResponse]])
async def list_run_events(
    run_id: str,
    request: Request,
    limit: int = Query(default=200, ge=1, le=500),
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    events = await monitor.list_run_events(container, shop, run_id, limit=limit)
    data = [
        RunEventResponse(
            event_id=event.event_id,
            ts=event.ts,
            type=event.type,
            source=event.source,
            severity=event.severity,
            variant_id=event.variant_id,
            request_id=event.request_id,
            payload=event.payload,
            overflow_artifact_id=event.overflow_artifact_id,
        )
        for event in events
    ]
    return success_response(request=request, data=data)
