from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, select, update

from roomrender.core.errors import InputValidationError, NotFoundError, ProviderTimeoutError, QuotaExceededError
from roomrender.domain.models import CompositeRun, MonitorEvent, ProductAsset, RoomSession, VariantResult
from roomrender.providers.imagegen.fake import FakeImageProvider
from roomrender.services import composite, monitor
from roomrender.tests.utils.seed import create_ready_asset, create_room, create_shop


def _variants(*ids: str) -> list[dict]:
    return [{"variant_id": variant_id, "placement": {"x": 0.5, "y": 0.8}} for variant_id in ids]


async def _render_used(container, shop_id: str) -> int:
    async with container.session_factory() as session:
        return (await container.quota.get_usage(session, shop_id, "render")).day.used


async def _seed(container):
    shop = await create_shop(container)
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)
    return shop, room


async def _run_count(container) -> int:
    async with container.session_factory() as session:
        return len((await session.execute(select(CompositeRun.id))).scalars().all())


@pytest.mark.asyncio
async def test_hanging_variant_times_out_and_run_is_partial(make_container) -> None:
    provider = FakeImageProvider(hang_when=lambda op, key: op == "generate_composite" and key == "v4")
    container = make_container(image_provider=provider)
    shop, room = await _seed(container)

    created = await composite.create_composite_run(
        container,
        shop,
        product_id="101",
        room_session_id=room.id,
        variant_specs=_variants("v1", "v2", "v3", "v4"),
    )
    assert created.variant_ids == ["v1", "v2", "v3", "v4"]

    detail = await composite.get_run_detail(container, shop, created.run_id)
    assert detail.status == "partial"
    assert detail.product_id == "101"
    assert (detail.success_count, detail.fail_count, detail.timeout_count) == (3, 0, 1)
    by_id = {variant.variant_id: variant for variant in detail.variants}
    assert by_id["v4"].status == "timeout"
    assert by_id["v4"].latency_ms is None
    assert by_id["v4"].error_code == "TIMEOUT"
    assert by_id["v4"].image_ref is None
    for variant_id in ("v1", "v2", "v3"):
        assert by_id[variant_id].status == "success"
        assert by_id[variant_id].latency_ms is not None
        assert by_id[variant_id].image_ref is not None
    assert detail.completed_at is not None
    assert detail.total_duration_ms is not None

    # Four reserved up front, the timed-out variant refunded at finalize.
    assert await _render_used(container, shop.id) == 3
    async with container.session_factory() as session:
        run = await session.get(CompositeRun, created.run_id)
    assert run.status == "partial"
    assert run.quota_reserved == 3


@pytest.mark.asyncio
async def test_complete_run_stores_every_variant(container) -> None:
    shop, room = await _seed(container)

    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )

    detail = await composite.get_run_detail(container, shop, created.run_id)
    assert detail.status == "complete"
    for variant_id in ("a", "b"):
        assert await container.blob_store.exists(f"runs/{created.run_id}/{variant_id}.png")
    assert await _render_used(container, shop.id) == 2

    await container.drain()
    async with container.session_factory() as session:
        events = (
            await session.execute(select(MonitorEvent).where(MonitorEvent.run_id == created.run_id))
        ).scalars().all()
    types = [event.type for event in events]
    assert types.count(monitor.EVENT_VARIANT_COMPLETED) == 2
    assert monitor.EVENT_RUN_CREATED in types
    assert monitor.EVENT_RUN_COMPLETED in types


@pytest.mark.asyncio
async def test_all_variants_failing_fails_run_and_refunds_quota(make_container) -> None:
    provider = FakeImageProvider(fail_when=lambda op, _key: op == "generate_composite")
    container = make_container(image_provider=provider)
    shop, room = await _seed(container)

    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )

    detail = await composite.get_run_detail(container, shop, created.run_id)
    assert detail.status == "failed"
    assert {variant.error_code for variant in detail.variants} == {"PROVIDER_ERROR"}
    assert all(variant.latency_ms is not None for variant in detail.variants)
    assert await _render_used(container, shop.id) == 0


@pytest.mark.asyncio
async def test_invalid_variant_lists_are_rejected_before_reserving(container) -> None:
    shop, room = await _seed(container)

    with pytest.raises(InputValidationError):
        await composite.create_composite_run(
            container, shop, product_id="101", room_session_id=room.id, variant_specs=[]
        )
    with pytest.raises(InputValidationError):
        await composite.create_composite_run(
            container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "a")
        )

    assert await _run_count(container) == 0
    assert await _render_used(container, shop.id) == 0


@pytest.mark.asyncio
async def test_quota_shortfall_creates_no_run(make_container) -> None:
    container = make_container()
    shop = await create_shop(container, limits={"render": (2, None)})
    await create_ready_asset(container, shop, "101")
    room = await create_room(container, shop)

    with pytest.raises(QuotaExceededError):
        await composite.create_composite_run(
            container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b", "c")
        )

    assert await _run_count(container) == 0
    assert container.image_provider.calls.count(("generate_composite", "a")) == 0


@pytest.mark.asyncio
async def test_run_requires_renderable_asset_and_known_room(container) -> None:
    shop, room = await _seed(container)
    async with container.session_factory() as session:
        await session.execute(update(ProductAsset).values(status="pending"))
        await session.commit()

    with pytest.raises(InputValidationError, match="not ready"):
        await composite.create_composite_run(
            container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a")
        )
    with pytest.raises(NotFoundError):
        await composite.create_composite_run(
            container, shop, product_id="999", room_session_id=room.id, variant_specs=_variants("a")
        )


@pytest.mark.asyncio
async def test_execute_run_is_idempotent(container) -> None:
    shop, room = await _seed(container)
    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )
    calls_before = len(container.image_provider.calls)

    status = await composite.execute_run(container, created.run_id)

    assert status.value == "complete"
    assert len(container.image_provider.calls) == calls_before
    assert await _render_used(container, shop.id) == 2


@pytest.mark.asyncio
async def test_stale_run_is_redriven_for_missing_variants_only(container) -> None:
    shop, room = await _seed(container)
    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )
    # Simulate a worker that died after writing only the first result.
    async with container.session_factory() as session:
        run = await session.get(CompositeRun, created.run_id)
        await session.execute(
            delete(VariantResult).where(VariantResult.run_id == run.id, VariantResult.variant_id == "b")
        )
        run.status = "in_flight"
        run.completed_at = None
        run.created_at = run.created_at - timedelta(hours=1)
        run.claimed_at = run.created_at
        await session.commit()

    assert await composite.list_stale_runs(container, limit=10) == [created.run_id]
    status = await composite.execute_run(container, created.run_id)

    assert status.value == "complete"
    assert container.image_provider.calls.count(("generate_composite", "a")) == 1
    assert container.image_provider.calls.count(("generate_composite", "b")) == 2
    assert await composite.list_stale_runs(container, limit=10) == []
    assert await _render_used(container, shop.id) == 2


@pytest.mark.asyncio
async def test_missing_inputs_fail_every_pending_variant(container) -> None:
    shop, room = await _seed(container)
    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )
    async with container.session_factory() as session:
        await session.execute(delete(VariantResult).where(VariantResult.run_id == created.run_id))
        run = await session.get(CompositeRun, created.run_id)
        run.status = "in_flight"
        run.room_session_id = None
        run.claimed_at = None
        await session.commit()

    status = await composite.execute_run(container, created.run_id)

    assert status.value == "failed"
    detail = await composite.get_run_detail(container, shop, created.run_id)
    assert {variant.error_code for variant in detail.variants} == {"INPUT_UNAVAILABLE"}
    assert await _render_used(container, shop.id) == 0


@pytest.mark.asyncio
async def test_list_runs_newest_first(container) -> None:
    shop, room = await _seed(container)
    first = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a")
    )
    second = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )

    summaries = await composite.list_runs(container, shop, limit=10)

    assert [item.run_id for item in summaries] == [second.run_id, first.run_id]
    assert summaries[0].requested == 2
    assert summaries[0].success_count == 2


class _ResetUploadProvider(FakeImageProvider):
    """Upload endpoint drops the connection; composites record their inputs."""

    def __init__(self) -> None:
        super().__init__()
        self.inputs: list[tuple[bool, bool]] = []

    async def upload_file(self, data: bytes, *, mime_type: str, display_name: str):
        raise ConnectionError("connection reset by peer")

    async def generate_composite(self, *, room, product, prompt, variant_id):
        self.inputs.append((room.data is not None, product.data is not None))
        return await super().generate_composite(room=room, product=product, prompt=prompt, variant_id=variant_id)


@pytest.mark.asyncio
async def test_upload_transport_error_falls_back_to_inline_bytes(make_container) -> None:
    provider = _ResetUploadProvider()
    container = make_container(image_provider=provider)
    shop, room = await _seed(container)

    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )

    detail = await composite.get_run_detail(container, shop, created.run_id)
    assert detail.status == "complete"
    assert provider.inputs == [(True, True), (True, True)]
    async with container.session_factory() as session:
        stored_room = await session.get(RoomSession, room.id)
    assert stored_room.provider_file_uri is None
    assert await _render_used(container, shop.id) == 2


class _UpstreamDeadlineProvider(FakeImageProvider):
    async def generate_composite(self, *, room, product, prompt, variant_id):
        if variant_id == "slow":
            raise ProviderTimeoutError()
        return await super().generate_composite(room=room, product=product, prompt=prompt, variant_id=variant_id)


@pytest.mark.asyncio
async def test_provider_deadline_is_recorded_as_timeout(make_container) -> None:
    container = make_container(image_provider=_UpstreamDeadlineProvider())
    shop, room = await _seed(container)

    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("fast", "slow")
    )

    detail = await composite.get_run_detail(container, shop, created.run_id)
    assert detail.status == "partial"
    by_id = {variant.variant_id: variant for variant in detail.variants}
    assert by_id["slow"].status == "timeout"
    assert by_id["slow"].error_code == "TIMEOUT"
    assert by_id["slow"].latency_ms is None
    assert await _render_used(container, shop.id) == 1


@pytest.mark.asyncio
async def test_run_claimed_by_live_executor_is_not_redriven(container) -> None:
    shop, room = await _seed(container)
    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )
    # Another executor is still working on "b" and claimed the run moments ago.
    async with container.session_factory() as session:
        run = await session.get(CompositeRun, created.run_id)
        await session.execute(
            delete(VariantResult).where(VariantResult.run_id == run.id, VariantResult.variant_id == "b")
        )
        run.status = "in_flight"
        run.completed_at = None
        run.created_at = run.created_at - timedelta(hours=1)
        run.claimed_at = datetime.now(timezone.utc)
        await session.commit()
    calls_before = len(container.image_provider.calls)

    assert await composite.list_stale_runs(container, limit=10) == []
    status = await composite.execute_run(container, created.run_id)

    assert status.value == "in_flight"
    assert len(container.image_provider.calls) == calls_before


@pytest.mark.asyncio
async def test_run_events_are_scoped_and_ordered(container) -> None:
    shop, room = await _seed(container)
    other = await create_shop(container, domain="other-store.myshopify.com")

    created = await composite.create_composite_run(
        container, shop, product_id="101", room_session_id=room.id, variant_specs=_variants("a", "b")
    )
    await container.drain()

    events = await monitor.list_run_events(container, shop, created.run_id)
    types = [event.type for event in events]
    assert types[0] == monitor.EVENT_RUN_CREATED
    assert types[-1] == monitor.EVENT_RUN_COMPLETED
    assert sorted(e.variant_id for e in events if e.type == monitor.EVENT_VARIANT_COMPLETED) == ["a", "b"]
    assert [event.ts for event in events] == sorted(event.ts for event in events)

    assert len(await monitor.list_run_events(container, shop, created.run_id, limit=1)) == 1
    with pytest.raises(NotFoundError):
        await monitor.list_run_events(container, other, created.run_id)
