"""Provider-side file handles cached on the rows that own the image.

The image-generation provider accepts uploaded file references that stay valid
for roughly two days. Re-uploading the same multi-megabyte image for every
variant is wasteful, so the handle and its expiry live on ``ProductAsset`` and
``RoomSession`` rows. Any write that changes the underlying image must call
:func:`invalidate` in the same transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from roomrender.core.errors import ProviderError, StorageError
from roomrender.domain.models import ProductAsset, RoomSession
from roomrender.providers.imagegen.base import ImageInput, ProviderFile
from roomrender.services.images import detect_image_mime


logger = logging.getLogger(__name__)

# Columns that identify the image a cached handle was built from.
_IMAGE_FIELDS: dict[type, tuple[str, ...]] = {
    ProductAsset: ("prepared_image_key",),
    RoomSession: ("original_image_key", "cleaned_image_key"),
}


def current_room_image_key(room: RoomSession) -> str | None:
    return room.cleaned_image_key or room.original_image_key


def holder_image_key(holder: Any) -> str | None:
    if isinstance(holder, RoomSession):
        return current_room_image_key(holder)
    return holder.prepared_image_key


def cached_handle(holder: Any, *, now: datetime, safety_buffer: timedelta) -> ProviderFile | None:
    # Never hand out a handle that expires within the safety buffer.
    uri = holder.provider_file_uri
    expires_at = holder.provider_file_expires_at
    if not uri or expires_at is None:
        return None
    if now >= expires_at - safety_buffer:
        return None
    return ProviderFile(uri=uri, expires_at=expires_at)


def invalidate(holder: Any) -> None:
    # Caller commits this together with the image mutation.
    holder.provider_file_uri = None
    holder.provider_file_expires_at = None


async def ensure_uploaded(
    session: AsyncSession,
    container,
    holder: Any,
    *,
    image_key: str,
    display_name: str,
) -> ProviderFile | None:
    """Return a usable provider handle for ``image_key``, uploading on a miss.

    Returns None when the upload fails; callers fall back to inline bytes.
    The refreshed handle is written only if the holder still points at the
    same image, so a concurrent invalidation is never overwritten.
    """
    settings = container.settings
    now = container.clock()
    handle = cached_handle(
        holder,
        now=now,
        safety_buffer=timedelta(seconds=settings.provider_file_safety_buffer_s),
    )
    if handle is not None:
        return handle

    try:
        data = await container.blob_store.download(image_key)
        mime_type = detect_image_mime(data)
        if mime_type is None:
            logger.warning("provider_file_unknown_format key=%s", image_key)
            return None
        uploaded = await container.image_provider.upload_file(
            data, mime_type=mime_type, display_name=display_name
        )
    except (ProviderError, StorageError) as exc:
        logger.warning("provider_file_upload_failed key=%s error=%s", image_key, exc)
        return None
    except Exception as exc:  # noqa: BLE001 - a failed upload is a cache miss, never fatal
        logger.warning(
            "provider_file_upload_crashed key=%s error_type=%s error=%s", image_key, type(exc).__name__, exc
        )
        return None

    await _store_handle(session, holder, uploaded)
    return uploaded


async def _store_handle(session: AsyncSession, holder: Any, uploaded: ProviderFile) -> bool:
    model = type(holder)
    fields = _IMAGE_FIELDS[model]
    stmt = update(model).where(model.id == holder.id)
    for name in fields:
        column = getattr(model, name)
        value = getattr(holder, name)
        stmt = stmt.where(column.is_(None) if value is None else column == value)
    result = await session.execute(
        stmt.values(provider_file_uri=uploaded.uri, provider_file_expires_at=uploaded.expires_at)
        .execution_options(synchronize_session=False)
    )
    stored = result.rowcount == 1
    if stored:
        # Mirror the row without marking the instance dirty.
        set_committed_value(holder, "provider_file_uri", uploaded.uri)
        set_committed_value(holder, "provider_file_expires_at", uploaded.expires_at)
    else:
        logger.info("provider_file_handle_discarded model=%s id=%s", model.__name__, holder.id)
    return stored


async def resolve_image_input(
    session: AsyncSession,
    container,
    holder: Any,
    *,
    image_key: str,
    display_name: str,
) -> ImageInput:
    # Prefer a provider handle; fall back to inline bytes from the blob store.
    handle = None
    # The cached handle only describes the holder's current image.
    if holder_image_key(holder) == image_key:
        handle = await ensure_uploaded(
            session, container, holder, image_key=image_key, display_name=display_name
        )
    if handle is not None:
        return ImageInput(mime_type=_guess_mime(image_key), file_uri=handle.uri)
    data = await container.blob_store.download(image_key)
    return ImageInput(mime_type=detect_image_mime(data) or _guess_mime(image_key), data=data)


def _guess_mime(key: str) -> str:
    lowered = key.lower()
    if lowered.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if lowered.endswith(".webp"):
        return "image/webp"
    return "image/png"
