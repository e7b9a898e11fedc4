from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from roomrender.core.errors import InputValidationError, NotFoundError, StorageError
from roomrender.domain.models import RoomSession, SavedRoom
from roomrender.providers.imagegen.fake import FakeImageProvider, fake_png
from roomrender.services import file_cache, rooms
from roomrender.tests.utils.seed import create_ready_asset, create_room, create_shop


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def _load_room(container, session_id: str) -> RoomSession:
    async with container.session_factory() as session:
        return await session.get(RoomSession, session_id)


async def _used(container, shop_id: str, operation: str) -> int:
    async with container.session_factory() as session:
        return (await container.quota.get_usage(session, shop_id, operation)).day.used


@pytest.mark.asyncio
async def test_room_session_requires_upload_before_confirm(container, shop) -> None:
    started = await rooms.start_room_session(container, shop, content_type="image/png")
    assert started.upload_key == f"rooms/{shop.id}/{started.session_id}/original"
    assert "method=PUT" in started.upload_target

    with pytest.raises(InputValidationError):
        await rooms.confirm_room_upload(container, shop, started.session_id)

    await container.blob_store.upload(started.upload_key, b"not an image", content_type="image/png")
    with pytest.raises(InputValidationError):
        await rooms.confirm_room_upload(container, shop, started.session_id)


@pytest.mark.asyncio
async def test_start_room_session_rejects_unknown_content_type(container, shop) -> None:
    with pytest.raises(InputValidationError):
        await rooms.start_room_session(container, shop, content_type="image/gif")


@pytest.mark.asyncio
async def test_render_job_completes_and_bills_after_success(container, shop) -> None:
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)

    job_id = await rooms.create_render_job(
        container, shop, product_id="101", session_id=room.id, style_hint="soft daylight"
    )

    view = await rooms.poll_job(container, shop, job_id)
    assert view.kind == "render"
    assert view.status == "completed"
    assert view.image_ref is not None
    assert view.error is None
    assert await _used(container, shop.id, "render") == 1


@pytest.mark.asyncio
async def test_failed_render_job_is_not_billed(make_container) -> None:
    provider = FakeImageProvider(fail_when=lambda op, _key: op == "generate_composite")
    container = make_container(image_provider=provider)
    shop = await create_shop(container)
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)

    job_id = await rooms.create_render_job(container, shop, product_id="101", session_id=room.id)

    view = await rooms.poll_job(container, shop, job_id)
    assert view.status == "failed"
    assert view.error_code == "PROVIDER_ERROR"
    assert view.image_ref is None
    assert await _used(container, shop.id, "render") == 0


@pytest.mark.asyncio
async def test_cleanup_replaces_image_and_invalidates_provider_handle(container, shop) -> None:
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)
    await rooms.create_render_job(container, shop, product_id="101", session_id=room.id)
    cached = await _load_room(container, room.id)
    assert cached.provider_file_uri is not None

    job_id = await rooms.cleanup_room(container, shop, room.id, mask=fake_png("mask"))

    view = await rooms.poll_job(container, shop, job_id)
    assert view.status == "completed"
    cleaned = await _load_room(container, room.id)
    assert cleaned.cleaned_image_key == f"rooms/{shop.id}/{room.id}/cleaned-{job_id}.png"
    assert cleaned.provider_file_uri is None
    assert cleaned.provider_file_expires_at is None
    assert await _used(container, shop.id, "cleanup") == 1

    # The next render uploads the cleaned image rather than reusing the stale handle.
    uploads_before = len(container.image_provider.uploads)
    await rooms.create_render_job(container, shop, product_id="101", session_id=room.id)
    assert len(container.image_provider.uploads) == uploads_before + 1
    refreshed = await _load_room(container, room.id)
    assert refreshed.provider_file_uri == container.image_provider.uploads[-1]


@pytest.mark.asyncio
async def test_cleanup_rejects_non_image_mask(container, shop) -> None:
    room = await create_room(container, shop)
    with pytest.raises(InputValidationError):
        await rooms.cleanup_room(container, shop, room.id, mask=b"plain text")


@pytest.mark.asyncio
async def test_expired_room_cannot_be_rendered(make_container) -> None:
    clock = _Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    container = make_container(clock=clock)
    shop = await create_shop(container)
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)

    clock.now = clock.now + timedelta(hours=25)
    with pytest.raises(InputValidationError, match="expired"):
        await rooms.create_render_job(container, shop, product_id="101", session_id=room.id)


@pytest.mark.asyncio
async def test_rooms_are_scoped_to_their_shop(container, shop) -> None:
    other = await create_shop(container, "other-store.myshopify.com")
    room = await create_room(container, shop)

    with pytest.raises(NotFoundError):
        await rooms.cleanup_room(container, other, room.id)


@pytest.mark.asyncio
async def test_save_room_copies_images(container, shop) -> None:
    room = await create_room(container, shop)
    job_id = await rooms.cleanup_room(container, shop, room.id)
    assert (await rooms.poll_job(container, shop, job_id)).status == "completed"

    saved = await rooms.save_room(container, shop, room.id, title="  Living room  ")

    assert saved.title == "Living room"
    prefix = f"saved-rooms/{shop.id}/{saved.saved_room_id}/"
    assert await container.blob_store.exists(f"{prefix}original")
    assert await container.blob_store.exists(f"{prefix}cleaned")
    assert "cleaned" in saved.preview_url
    async with container.session_factory() as session:
        row = await session.get(SavedRoom, saved.saved_room_id)
    assert row.original_image_key == f"{prefix}original"
    assert row.cleaned_image_key == f"{prefix}cleaned"


@pytest.mark.asyncio
async def test_save_room_failure_leaves_no_row(container, shop, monkeypatch) -> None:
    room = await create_room(container, shop)

    async def _broken_copy(source_key: str, dest_key: str) -> None:
        raise StorageError("copy failed")

    monkeypatch.setattr(container.blob_store, "copy", _broken_copy)
    with pytest.raises(StorageError):
        await rooms.save_room(container, shop, room.id)

    async with container.session_factory() as session:
        rows = (await session.execute(select(SavedRoom))).scalars().all()
    assert rows == []


class _ReplacingUploadProvider(FakeImageProvider):
    """Runs ``during_upload`` once, after the provider accepted the bytes."""

    def __init__(self) -> None:
        super().__init__()
        self.during_upload = None

    async def upload_file(self, data: bytes, *, mime_type: str, display_name: str):
        handle = await super().upload_file(data, mime_type=mime_type, display_name=display_name)
        if self.during_upload is not None:
            hook, self.during_upload = self.during_upload, None
            await hook()
        return handle


@pytest.mark.asyncio
async def test_confirm_gives_each_upload_its_own_image_key(container, shop) -> None:
    room = await create_room(container, shop, image=fake_png("first"))
    await container.blob_store.upload(
        rooms.room_upload_key(shop.id, room.id), fake_png("second"), content_type="image/png"
    )

    await rooms.confirm_room_upload(container, shop, room.id)

    reloaded = await _load_room(container, room.id)
    assert reloaded.original_image_key != room.original_image_key
    assert reloaded.original_image_key.startswith(f"rooms/{shop.id}/{room.id}/original-")
    assert await container.blob_store.download(room.original_image_key) == fake_png("first")
    assert await container.blob_store.download(reloaded.original_image_key) == fake_png("second")


@pytest.mark.asyncio
async def test_reupload_during_provider_upload_discards_stale_handle(make_container) -> None:
    provider = _ReplacingUploadProvider()
    container = make_container(image_provider=provider)
    shop = await create_shop(container)
    room = await create_room(container, shop, image=fake_png("first"))

    async def _replace_room_image() -> None:
        await container.blob_store.upload(
            rooms.room_upload_key(shop.id, room.id), fake_png("second"), content_type="image/png"
        )
        await rooms.confirm_room_upload(container, shop, room.id)

    provider.during_upload = _replace_room_image
    async with container.session_factory() as session:
        holder = await session.get(RoomSession, room.id)
        handle = await file_cache.ensure_uploaded(
            session, container, holder, image_key=holder.original_image_key, display_name=f"room-{room.id}"
        )
        await session.commit()

    assert handle is not None
    reloaded = await _load_room(container, room.id)
    assert reloaded.provider_file_uri is None
    assert reloaded.provider_file_expires_at is None
    assert await container.blob_store.download(reloaded.original_image_key) == fake_png("second")
