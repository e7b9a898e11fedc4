from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete

from roomrender.core.errors import (
    InputValidationError,
    NotFoundError,
    ProviderError,
    RoomRenderError,
    StorageError,
)
from roomrender.domain.models import RenderJob, RoomSession, SavedRoom, Shop, new_id
from roomrender.domain.states import (
    RENDERABLE_ASSET_STATUSES,
    AssetStatus,
    JobStatus,
    transition_job,
)
from roomrender.persistence.repos import assets as assets_repo
from roomrender.persistence.repos import rooms as rooms_repo
from roomrender.persistence.repos import shops as shops_repo
from roomrender.providers.imagegen.base import ImageInput
from roomrender.services import file_cache, monitor
from roomrender.services.container import ServiceContainer
from roomrender.services.images import detect_image_mime, extension_for
from roomrender.services.prompts import build_composite_prompt
from roomrender.services.queue import TaskPayload, enqueue_task


logger = logging.getLogger(__name__)

_UPLOAD_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}
_MAX_ERROR_CHARS = 500


@dataclass(frozen=True)
class RoomSessionStart:
    session_id: str
    upload_target: str
    upload_key: str
    expires_at: datetime


@dataclass(frozen=True)
class RoomSessionView:
    session_id: str
    has_image: bool
    cleaned: bool
    expires_at: datetime


@dataclass(frozen=True)
class SavedRoomView:
    saved_room_id: str
    title: str | None
    preview_url: str


@dataclass(frozen=True)
class JobView:
    job_id: str
    kind: str
    status: str
    image_ref: str | None
    error: str | None
    error_code: str | None


def room_upload_key(shop_id: str, session_id: str) -> str:
    return f"rooms/{shop_id}/{session_id}/original"


def room_prefix(shop_id: str, session_id: str) -> str:
    return f"rooms/{shop_id}/{session_id}/"


def _ensure_usable(room: RoomSession, now: datetime) -> None:
    if room.expires_at <= now:
        raise InputValidationError("Room session expired")


async def _load_room(session, shop: Shop, session_id: str) -> RoomSession:
    room = await rooms_repo.get_room_session(session, shop.id, session_id)
    if room is None:
        raise NotFoundError("Room session not found")
    return room


async def start_room_session(
    container: ServiceContainer,
    shop: Shop,
    *,
    content_type: str = "image/jpeg",
) -> RoomSessionStart:
    if content_type not in _UPLOAD_CONTENT_TYPES:
        raise InputValidationError(f"Unsupported content type: {content_type}")
    now = container.clock()
    session_id = new_id()
    key = room_upload_key(shop.id, session_id)
    expires_at = now + timedelta(hours=container.settings.room_session_ttl_hours)
    upload_target = await container.blob_store.signed_upload_url(
        key, content_type=content_type, ttl_s=container.settings.signed_url_ttl_s
    )
    async with container.session_factory() as session:
        session.add(RoomSession(id=session_id, shop_id=shop.id, expires_at=expires_at, created_at=now))
        await session.commit()
    logger.info("room_session_started shop_id=%s session_id=%s", shop.id, session_id)
    return RoomSessionStart(
        session_id=session_id,
        upload_target=upload_target,
        upload_key=key,
        expires_at=expires_at,
    )


async def confirm_room_upload(container: ServiceContainer, shop: Shop, session_id: str) -> RoomSessionView:
    # Verify the shopper's upload landed before the session can be rendered against.
    now = container.clock()
    key = room_upload_key(shop.id, session_id)
    async with container.session_factory() as session:
        room = await _load_room(session, shop, session_id)
        _ensure_usable(room, now)
    if not await container.blob_store.exists(key):
        raise InputValidationError("Room image has not been uploaded")
    data = await container.blob_store.download(key)
    mime_type = detect_image_mime(data)
    if mime_type is None:
        raise InputValidationError("Room image is not a supported format")
    # Every confirmed image gets its own key so cached handles never outlive it.
    image_key = f"{room_prefix(shop.id, session_id)}original-{new_id()}.{extension_for(mime_type)}"
    await container.blob_store.upload(image_key, data, content_type=mime_type)

    async with container.session_factory() as session:
        room = await _load_room(session, shop, session_id)
        room.original_image_key = image_key
        room.cleaned_image_key = None
        room.last_used_at = now
        # Same transaction as the image change.
        file_cache.invalidate(room)
        await session.commit()
    return RoomSessionView(session_id=room.id, has_image=True, cleaned=False, expires_at=room.expires_at)


async def cleanup_room(
    container: ServiceContainer,
    shop: Shop,
    session_id: str,
    *,
    mask: bytes | None = None,
    request_id: str | None = None,
) -> str:
    """Queue object removal for a room image and return the job id."""
    now = container.clock()
    if mask is not None and detect_image_mime(mask) is None:
        raise InputValidationError("Mask must be a PNG, JPEG, WEBP or BMP image")
    job_id = new_id()
    async with container.session_factory() as session:
        room = await _load_room(session, shop, session_id)
        _ensure_usable(room, now)
        if not room.original_image_key:
            raise InputValidationError("Room image has not been uploaded")
        # Cleanup is logged but never blocked.
        await container.quota.enforce_quota(session, shop.id, "cleanup", 1)

    mask_key = None
    if mask is not None:
        mask_key = f"{room_prefix(shop.id, session_id)}masks/{job_id}.{extension_for(detect_image_mime(mask))}"
        await container.blob_store.upload(mask_key, mask, content_type=detect_image_mime(mask))

    async with container.session_factory() as session:
        session.add(
            RenderJob(
                id=job_id,
                shop_id=shop.id,
                kind="cleanup",
                room_session_id=session_id,
                status=JobStatus.QUEUED.value,
                input_json={"mask_key": mask_key, "request_id": request_id},
                created_at=now,
            )
        )
        await session.commit()
    await enqueue_task(container, TaskPayload(task="render_job", entity_id=job_id, request_id=request_id))
    return job_id


async def create_render_job(
    container: ServiceContainer,
    shop: Shop,
    *,
    product_id: str,
    session_id: str,
    style_hint: str | None = None,
    request_id: str | None = None,
) -> str:
    """Queue a single composite render; billed only once it succeeds."""
    now = container.clock()
    job_id = new_id()
    async with container.session_factory() as session:
        asset = await assets_repo.get_asset(session, shop.id, product_id)
        if asset is None:
            raise NotFoundError("Asset not found")
        if AssetStatus(asset.status) not in RENDERABLE_ASSET_STATUSES or not asset.prepared_image_key:
            raise InputValidationError("Product asset is not ready")
        room = await _load_room(session, shop, session_id)
        _ensure_usable(room, now)
        if not file_cache.current_room_image_key(room):
            raise InputValidationError("Room image has not been uploaded")
        await container.quota.enforce_quota(session, shop.id, "render", 1)
        session.add(
            RenderJob(
                id=job_id,
                shop_id=shop.id,
                kind="render",
                room_session_id=room.id,
                product_asset_id=asset.id,
                status=JobStatus.QUEUED.value,
                input_json={"style_hint": style_hint, "request_id": request_id},
                created_at=now,
            )
        )
        await session.commit()
    await enqueue_task(container, TaskPayload(task="render_job", entity_id=job_id, request_id=request_id))
    return job_id


async def poll_job(container: ServiceContainer, shop: Shop, job_id: str) -> JobView:
    async with container.session_factory() as session:
        job = await rooms_repo.get_job(session, shop.id, job_id)
    if job is None:
        raise NotFoundError("Job not found")
    image_ref = None
    if job.status == JobStatus.COMPLETED.value and job.output_image_key:
        image_ref = await container.blob_store.signed_read_url(
            job.output_image_key, ttl_s=container.settings.signed_url_ttl_s
        )
    return JobView(
        job_id=job.id,
        kind=job.kind,
        status=job.status,
        image_ref=image_ref,
        error=job.error_message,
        error_code=job.error_code,
    )


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ProviderError):
        return exc.code
    if isinstance(exc, StorageError):
        return "STORAGE_ERROR"
    if isinstance(exc, InputValidationError):
        return "INVALID_INPUT"
    return "INTERNAL_ERROR"


async def process_job(container: ServiceContainer, job_id: str) -> bool:
    """Claim a queued render job and drive it to a terminal status."""
    now = container.clock()
    stale_before = now - timedelta(seconds=container.settings.job_stale_after_s)
    async with container.session_factory() as session:
        claimed = await rooms_repo.claim_job(session, job_id, now=now, stale_before=stale_before)
        await session.commit()
    if not claimed:
        logger.info("job_claim_skipped job_id=%s", job_id)
        return False

    async with container.session_factory() as session:
        job = await rooms_repo.get_job_by_id(session, job_id)
        shop = await shops_repo.get_shop(session, job.shop_id) if job else None
    if job is None or shop is None:
        return False

    try:
        if job.kind == "cleanup":
            output_key = await _run_cleanup(container, shop, job)
        else:
            output_key = await _run_render(container, shop, job)
    except Exception as exc:  # noqa: BLE001 - failures are persisted on the job
        if not isinstance(exc, RoomRenderError):
            logger.exception("render_job_crashed job_id=%s", job_id)
        await _mark_job_failed(container, shop, job_id, exc)
        return False

    monitor.emit(
        container,
        type=monitor.EVENT_ROOM_CLEANUP_COMPLETED if job.kind == "cleanup" else monitor.EVENT_RENDER_JOB_COMPLETED,
        source="worker",
        shop_id=shop.id,
        payload={"job_id": job_id, "output_key": output_key},
    )
    return True


async def _run_cleanup(container: ServiceContainer, shop: Shop, job: RenderJob) -> str:
    async with container.session_factory() as session:
        room = await rooms_repo.get_room_session_by_id(session, job.room_session_id or "")
        if room is None:
            raise InputValidationError("Room session no longer exists")
        source_key = file_cache.current_room_image_key(room)
        if not source_key:
            raise InputValidationError("Room image has not been uploaded")
        room_input = await file_cache.resolve_image_input(
            session, container, room, image_key=source_key, display_name=f"room-{room.id}"
        )
        await session.commit()

    mask_input = None
    mask_key = (job.input_json or {}).get("mask_key")
    if mask_key:
        mask_data = await container.blob_store.download(mask_key)
        mask_input = ImageInput(mime_type=detect_image_mime(mask_data) or "image/png", data=mask_data)

    cleaned = await container.image_provider.remove_objects(room_input, mask_input)
    output_key = f"{room_prefix(shop.id, room.id)}cleaned-{job.id}.{extension_for(cleaned.mime_type)}"
    await container.blob_store.upload(output_key, cleaned.data, content_type=cleaned.mime_type)

    async with container.session_factory() as session:
        room = await rooms_repo.get_room_session_by_id(session, room.id)
        current = await rooms_repo.get_job_by_id(session, job.id)
        if room is None or current is None:
            raise InputValidationError("Room session no longer exists")
        room.cleaned_image_key = output_key
        room.last_used_at = container.clock()
        # Same transaction as the cleaned image write.
        file_cache.invalidate(room)
        transition_job(current, JobStatus.COMPLETED)
        current.output_image_key = output_key
        current.completed_at = container.clock()
        await container.quota.increment_quota(session, shop.id, "cleanup", 1)
        await session.commit()
    return output_key


async def _run_render(container: ServiceContainer, shop: Shop, job: RenderJob) -> str:
    async with container.session_factory() as session:
        asset = await assets_repo.get_asset_by_id(session, job.product_asset_id or "")
        room = await rooms_repo.get_room_session_by_id(session, job.room_session_id or "")
        if asset is None or not asset.prepared_image_key:
            raise InputValidationError("Product asset is not ready")
        room_key = file_cache.current_room_image_key(room) if room else None
        if room is None or not room_key:
            raise InputValidationError("Room image has not been uploaded")
        product_input = await file_cache.resolve_image_input(
            session,
            container,
            asset,
            image_key=asset.prepared_image_key,
            display_name=f"asset-{asset.id}-v{asset.prepared_image_version}",
        )
        room_input = await file_cache.resolve_image_input(
            session, container, room, image_key=room_key, display_name=f"room-{room.id}"
        )
        await session.commit()

    facts = {
        "product": {
            "title": asset.product_title,
            "render_instructions": asset.render_instructions,
            "placement_hints": asset.placement_hints,
        }
    }
    spec = {"variant_id": "single", "style_hint": (job.input_json or {}).get("style_hint")}
    image = await container.image_provider.generate_composite(
        room=room_input,
        product=product_input,
        prompt=build_composite_prompt(facts, spec),
        variant_id="single",
    )
    output_key = f"renders/{shop.id}/{job.id}.{extension_for(image.mime_type)}"
    await container.blob_store.upload(output_key, image.data, content_type=image.mime_type)

    async with container.session_factory() as session:
        current = await rooms_repo.get_job_by_id(session, job.id)
        transition_job(current, JobStatus.COMPLETED)
        current.output_image_key = output_key
        current.completed_at = container.clock()
        # Billed only after the provider call succeeded.
        await container.quota.increment_quota(session, shop.id, "render", 1)
        await session.commit()
    return output_key


async def _mark_job_failed(container: ServiceContainer, shop: Shop, job_id: str, exc: Exception) -> None:
    code = _error_code(exc)
    message = str(exc)[:_MAX_ERROR_CHARS] or type(exc).__name__
    async with container.session_factory() as session:
        job = await rooms_repo.get_job_by_id(session, job_id)
        if job is None or job.status != JobStatus.PROCESSING.value:
            return
        transition_job(job, JobStatus.FAILED)
        job.error_code = code
        job.error_message = message
        job.completed_at = container.clock()
        await session.commit()
        kind = job.kind
    logger.warning("render_job_failed job_id=%s kind=%s code=%s error=%s", job_id, kind, code, message)
    monitor.emit(
        container,
        type=monitor.EVENT_ROOM_CLEANUP_FAILED if kind == "cleanup" else monitor.EVENT_RENDER_JOB_FAILED,
        source="worker",
        severity="error",
        shop_id=shop.id,
        payload={"job_id": job_id, "error_code": code, "error": message},
    )


async def list_claimable_jobs(container: ServiceContainer, *, limit: int) -> list[str]:
    now = container.clock()
    async with container.session_factory() as session:
        return await rooms_repo.list_claimable_job_ids(
            session,
            stale_before=now - timedelta(seconds=container.settings.job_stale_after_s),
            limit=limit,
        )


async def save_room(
    container: ServiceContainer,
    shop: Shop,
    session_id: str,
    *,
    title: str | None = None,
) -> SavedRoomView:
    """Copy a session's images to durable storage so the room outlives the session."""
    now = container.clock()
    async with container.session_factory() as session:
        room = await _load_room(session, shop, session_id)
        _ensure_usable(room, now)
        source_key = room.original_image_key
        cleaned_key = room.cleaned_image_key
        if not source_key:
            raise InputValidationError("Room image has not been uploaded")
        saved = SavedRoom(
            shop_id=shop.id,
            title=title.strip() if title and title.strip() else None,
            created_at=now,
        )
        session.add(saved)
        await session.commit()
        saved_id = saved.id

    prefix = f"saved-rooms/{shop.id}/{saved_id}/"
    original_dest = f"{prefix}original"
    cleaned_dest = f"{prefix}cleaned" if cleaned_key and cleaned_key != source_key else None
    try:
        await container.blob_store.copy(source_key, original_dest)
        if cleaned_dest:
            await container.blob_store.copy(cleaned_key, cleaned_dest)
    except StorageError:
        # Drop the row so no saved room points at missing blobs.
        async with container.session_factory() as session:
            await session.execute(delete(SavedRoom).where(SavedRoom.id == saved_id))
            await session.commit()
        await container.blob_store.delete_prefix(prefix)
        logger.warning("room_save_failed shop_id=%s session_id=%s", shop.id, session_id)
        raise

    async with container.session_factory() as session:
        saved = await session.get(SavedRoom, saved_id)
        saved.original_image_key = original_dest
        saved.cleaned_image_key = cleaned_dest
        await session.commit()
    preview_url = await container.blob_store.signed_read_url(
        cleaned_dest or original_dest, ttl_s=container.settings.signed_url_ttl_s
    )
    logger.info("room_saved shop_id=%s session_id=%s saved_room_id=%s", shop.id, session_id, saved_id)
    return SavedRoomView(saved_room_id=saved_id, title=saved.title, preview_url=preview_url)
