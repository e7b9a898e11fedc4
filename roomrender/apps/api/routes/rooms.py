from __future__ import annotations

import base64
import binascii
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from roomrender.apps.api.deps import get_container, get_current_shop, request_id
from roomrender.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.domain.models import Shop
from roomrender.services import rooms
from roomrender.services.container import ServiceContainer


router = APIRouter(prefix="/rooms", tags=["rooms"], responses=DEFAULT_ERROR_RESPONSES)


class StartRoomRequest(BaseModel):
    model_config = {"extra": "forbid"}

    content_type: str = "image/jpeg"


class RoomSessionResponse(BaseModel):
    session_id: str
    upload_target: str
    expires_at: datetime


class RoomConfirmResponse(BaseModel):
    session_id: str
    has_image: bool
    cleaned: bool
    expires_at: datetime


class CleanupRequest(BaseModel):
    model_config = {"extra": "forbid"}

    # Mask image as base64; omitted means let the provider pick the clutter.
    mask_base64: str | None = None


class JobCreatedResponse(BaseModel):
    job_id: str
    status: str = "queued"


class SaveRoomRequest(BaseModel):
    model_config = {"extra": "forbid"}

    title: str | None = Field(default=None, max_length=200)


class SavedRoomResponse(BaseModel):
    saved_room_id: str
    title: str | None
    preview_url: str


def _decode_mask(raw: str | None) -> bytes | None:
    if raw is None:
        return None
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "VALIDATION_ERROR", "message": "mask_base64 is not valid base64"},
        ) from exc


@router.post("", response_model=SuccessEnvelope[RoomSessionResponse], status_code=201)
async def start_room_session(
    request: Request,
    payload: StartRoomRequest | None = None,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    content_type = payload.content_type if payload else "image/jpeg"
    started = await rooms.start_room_session(container, shop, content_type=content_type)
    data = RoomSessionResponse(
        session_id=started.session_id,
        upload_target=started.upload_target,
        expires_at=started.expires_at,
    )
    return success_response(request=request, data=data)


@router.post("/{session_id}/confirm", response_model=SuccessEnvelope[RoomConfirmResponse])
async def confirm_room_upload(
    session_id: str,
    request: Request,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    view = await rooms.confirm_room_upload(container, shop, session_id)
    data = RoomConfirmResponse(
        session_id=view.session_id,
        has_image=view.has_image,
        cleaned=view.cleaned,
        expires_at=view.expires_at,
    )
    return success_response(request=request, data=data)


@router.post("/{session_id}/cleanup", response_model=SuccessEnvelope[JobCreatedResponse], status_code=202)
async def cleanup_room(
    session_id: str,
    request: Request,
    payload: CleanupRequest | None = None,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
    req_id: str = Depends(request_id),
) -> dict:
    mask = _decode_mask(payload.mask_base64 if payload else None)
    job_id = await rooms.cleanup_room(container, shop, session_id, mask=mask, request_id=req_id)
    return success_response(request=request, data=JobCreatedResponse(job_id=job_id))


@router.post("/{session_id}/save", response_model=SuccessEnvelope[SavedRoomResponse], status_code=201)
async def save_room(
    session_id: str,
    request: Request,
    payload: SaveRoomRequest | None = None,
    shop: Shop = Depends(get_current_shop),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    saved = await rooms.save_room(container, shop, session_id, title=payload.title if payload else None)
    data = SavedRoomResponse(saved_room_id=saved.saved_room_id, title=saved.title, preview_url=saved.preview_url)
    return success_response(request=request, data=data)
