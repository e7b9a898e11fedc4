from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from roomrender.core.errors import InputValidationError, StorageError
from roomrender.services.resilience import Bulkhead, PrepRetryPolicy, RetryPolicy, retry_async


_FAST = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1)


@pytest.mark.asyncio
async def test_retry_async_retries_transient_failures() -> None:
    attempts = {"count": 0}

    async def _flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise StorageError("temporary")
        return "ok"

    assert await retry_async(_flaky, policy=_FAST) == "ok"
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    attempts = {"count": 0}

    async def _down() -> None:
        attempts["count"] += 1
        raise StorageError("still down")

    with pytest.raises(StorageError):
        await retry_async(_down, policy=_FAST)
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_validation_errors() -> None:
    attempts = {"count": 0}

    async def _invalid() -> None:
        attempts["count"] += 1
        raise InputValidationError("bad input")

    with pytest.raises(InputValidationError):
        await retry_async(_invalid, policy=_FAST)
    assert attempts["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_applies_per_attempt_timeout() -> None:
    policy = RetryPolicy(timeout_ms=20, max_attempts=1, backoff_ms=1)

    async def _slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        await retry_async(_slow, policy=policy)


def test_prep_retry_policy_backoff_and_cap() -> None:
    policy = PrepRetryPolicy(max_retries=3, backoff_s=30)
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    assert policy.next_attempt_at(1, now) == now + timedelta(seconds=30)
    assert policy.next_attempt_at(2, now) == now + timedelta(seconds=60)
    assert policy.next_attempt_at(3, now) is None
    assert policy.can_retry(2)
    assert not policy.can_retry(3)


@pytest.mark.asyncio
async def test_bulkhead_caps_concurrency() -> None:
    bulkhead = Bulkhead("test", 2)
    active = {"now": 0, "peak": 0}

    async def _work() -> None:
        async with bulkhead.slot():
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1

    await asyncio.gather(*(_work() for _ in range(6)))
    assert active["peak"] == 2
    assert bulkhead.limit == 2
    assert bulkhead.name == "test"


@pytest.mark.asyncio
async def test_bulkhead_releases_slot_on_error() -> None:
    bulkhead = Bulkhead("test", 1)
    with pytest.raises(RuntimeError):
        async with bulkhead.slot():
            raise RuntimeError("boom")
    # A leaked slot would make this wait forever.
    await asyncio.wait_for(_enter(bulkhead), timeout=1)


async def _enter(bulkhead: Bulkhead) -> None:
    async with bulkhead.slot():
        return None
