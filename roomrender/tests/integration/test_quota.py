from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from roomrender.core.errors import QuotaExceededError
from roomrender.tests.utils.seed import create_shop


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def _usage(container, shop_id: str, operation: str = "render"):
    async with container.session_factory() as session:
        return await container.quota.get_usage(session, shop_id, operation)


async def _reserve(container, shop_id: str, count: int, operation: str = "render"):
    async with container.session_factory() as session:
        result = await container.quota.reserve_quota(session, shop_id, operation, count)
        await session.commit()
        return result


@pytest.mark.asyncio
async def test_reserve_is_all_or_nothing(container) -> None:
    shop = await create_shop(container, limits={"render": (5, 100)})

    await _reserve(container, shop.id, 3)
    with pytest.raises(QuotaExceededError) as excinfo:
        await _reserve(container, shop.id, 3)

    assert excinfo.value.result.blocked_period == "day"
    usage = await _usage(container, shop.id)
    assert usage.day.used == 3
    assert usage.day.remaining == 2
    assert usage.month.used == 3


@pytest.mark.asyncio
async def test_month_block_compensates_day_counter(container) -> None:
    shop = await create_shop(container, limits={"render": (10, 4)})

    await _reserve(container, shop.id, 3)
    with pytest.raises(QuotaExceededError) as excinfo:
        await _reserve(container, shop.id, 2)

    assert excinfo.value.result.blocked_period == "month"
    usage = await _usage(container, shop.id)
    assert usage.day.used == 3
    assert usage.month.used == 3


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overshoot(container) -> None:
    shop = await create_shop(container, limits={"render": (5, None)})

    outcomes = await asyncio.gather(
        *(_reserve(container, shop.id, 2) for _ in range(4)),
        return_exceptions=True,
    )

    granted = [item for item in outcomes if not isinstance(item, BaseException)]
    blocked = [item for item in outcomes if isinstance(item, QuotaExceededError)]
    assert len(granted) == 2
    assert len(blocked) == 2
    usage = await _usage(container, shop.id)
    assert usage.day.used == 4
    assert usage.month.limit is None


@pytest.mark.asyncio
async def test_release_floors_at_zero(container) -> None:
    shop = await create_shop(container, limits={"render": (5, 50)})
    await _reserve(container, shop.id, 1)

    async with container.session_factory() as session:
        await container.quota.release_quota(session, shop.id, "render", 5)
        await session.commit()

    usage = await _usage(container, shop.id)
    assert usage.day.used == 0
    assert usage.month.used == 0


@pytest.mark.asyncio
async def test_release_targets_the_reservation_period(make_container) -> None:
    clock = _Clock(datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc))
    container = make_container(clock=clock)
    shop = await create_shop(container, limits={"render": (10, 100)})
    reserved_at = clock.now
    await _reserve(container, shop.id, 4)

    # The run finishes after midnight on the first of the next month.
    clock.now = datetime(2026, 2, 1, 0, 1, tzinfo=timezone.utc)
    async with container.session_factory() as session:
        await container.quota.release_quota(session, shop.id, "render", 3, reserved_at=reserved_at)
        await session.commit()

    february = await _usage(container, shop.id)
    assert february.day.used == 0
    assert february.month.used == 0
    clock.now = reserved_at
    january = await _usage(container, shop.id)
    assert january.day.used == 1
    assert january.month.used == 1


@pytest.mark.asyncio
async def test_enforce_then_increment_bills_after_success(container) -> None:
    shop = await create_shop(container, limits={"render": (1, 10)})

    async with container.session_factory() as session:
        await container.quota.enforce_quota(session, shop.id, "render", 1)
        # Enforcement alone never bills.
        assert (await container.quota.get_usage(session, shop.id, "render")).day.used == 0
        await container.quota.increment_quota(session, shop.id, "render", 1)
        await session.commit()

    async with container.session_factory() as session:
        with pytest.raises(QuotaExceededError):
            await container.quota.enforce_quota(session, shop.id, "render", 1)


@pytest.mark.asyncio
async def test_cleanup_is_recorded_but_never_blocked(container) -> None:
    shop = await create_shop(container, limits={"cleanup": (0, 0)})

    await _reserve(container, shop.id, 2, operation="cleanup")
    async with container.session_factory() as session:
        usage = await container.quota.enforce_quota(session, shop.id, "cleanup", 1)

    assert usage.day.used == 2
    assert usage.day.limit == 0


@pytest.mark.asyncio
async def test_plan_defaults_apply_without_limit_rows(make_container) -> None:
    container = make_container(quota_default_daily_prep_limit=2, quota_default_monthly_prep_limit=None)
    shop = await create_shop(container)

    await _reserve(container, shop.id, 2, operation="prep")
    with pytest.raises(QuotaExceededError):
        await _reserve(container, shop.id, 1, operation="prep")
