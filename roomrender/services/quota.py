from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomrender.core.config import Settings, get_settings
from roomrender.core.errors import InputValidationError, QuotaExceededError
from roomrender.domain.models import UsageCounter
from roomrender.domain.states import QuotaOperation
from roomrender.persistence.dialect import insert_ignore
from roomrender.persistence.repos import shops as shops_repo


logger = logging.getLogger(__name__)

_PERIOD_DAY = "day"
_PERIOD_MONTH = "month"

# Operation classes that are recorded but never block the caller.
NON_BLOCKING_OPERATIONS: frozenset[str] = frozenset({"cleanup"})


@dataclass(frozen=True)
class QuotaSnapshot:
    # Capture limit and usage for a period for header rendering and errors.
    limit: int | None
    used: int
    remaining: int | None


@dataclass(frozen=True)
class QuotaResult:
    # Summarize quota state for one shop/operation pair.
    allowed: bool
    operation: str
    day: QuotaSnapshot
    month: QuotaSnapshot
    blocked_period: str | None = None


@dataclass(frozen=True)
class _Limits:
    daily: int | None
    monthly: int | None


class QuotaService:
    """Per-shop daily/monthly counters gating provider-billed work.

    Two usage patterns are supported. ``enforce_quota`` followed by
    ``increment_quota`` after the billed call succeeds (read, then bill on
    success). ``reserve_quota`` for batches and fan-outs: a conditional
    compare-and-increment across both periods that either reserves the whole
    amount or nothing, paired with ``release_quota`` for work that never
    happened. None of the methods commit; callers own the transaction.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow time injection for deterministic rollover tests.
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now

    async def get_usage(self, session: AsyncSession, shop_id: str, operation: QuotaOperation) -> QuotaResult:
        now = self._time_provider()
        limits = await self._limits(session, shop_id, operation)
        day_used = await _read_count(session, shop_id, operation, _PERIOD_DAY, _day_start(now))
        month_used = await _read_count(session, shop_id, operation, _PERIOD_MONTH, _month_start(now))
        return QuotaResult(
            allowed=True,
            operation=operation,
            day=_snapshot(limits.daily, day_used),
            month=_snapshot(limits.monthly, month_used),
        )

    async def enforce_quota(
        self,
        session: AsyncSession,
        shop_id: str,
        operation: QuotaOperation,
        count: int = 1,
    ) -> QuotaResult:
        # Read-only gate; callers bill with increment_quota once work succeeds.
        _validate_count(count)
        usage = await self.get_usage(session, shop_id, operation)
        if operation in NON_BLOCKING_OPERATIONS:
            return usage
        blocked = _blocked_period(usage, count)
        if blocked is not None:
            result = QuotaResult(
                allowed=False,
                operation=operation,
                day=usage.day,
                month=usage.month,
                blocked_period=blocked,
            )
            logger.info(
                "quota_blocked shop_id=%s operation=%s period=%s requested=%s",
                shop_id,
                operation,
                blocked,
                count,
            )
            raise QuotaExceededError(_blocked_message(result), result=result)
        return usage

    async def increment_quota(
        self,
        session: AsyncSession,
        shop_id: str,
        operation: QuotaOperation,
        count: int = 1,
    ) -> None:
        # Atomic server-side increment; never read-modify-write in Python.
        _validate_count(count)
        now = self._time_provider()
        for period_type, period_start in ((_PERIOD_DAY, _day_start(now)), (_PERIOD_MONTH, _month_start(now))):
            await _ensure_counter(session, shop_id, operation, period_type, period_start)
            await session.execute(
                update(UsageCounter)
                .where(*_counter_key(shop_id, operation, period_type, period_start))
                .values(count=UsageCounter.count + count, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    async def reserve_quota(
        self,
        session: AsyncSession,
        shop_id: str,
        operation: QuotaOperation,
        count: int,
    ) -> QuotaResult:
        # Reserve the whole amount across both periods or nothing at all.
        _validate_count(count)
        if operation in NON_BLOCKING_OPERATIONS:
            await self.increment_quota(session, shop_id, operation, count)
            return await self.get_usage(session, shop_id, operation)

        now = self._time_provider()
        limits = await self._limits(session, shop_id, operation)
        day_start = _day_start(now)
        month_start = _month_start(now)
        await _ensure_counter(session, shop_id, operation, _PERIOD_DAY, day_start)
        await _ensure_counter(session, shop_id, operation, _PERIOD_MONTH, month_start)

        day_ok = await _conditional_increment(
            session, shop_id, operation, _PERIOD_DAY, day_start, count, limits.daily, now
        )
        if not day_ok:
            return await self._raise_blocked(session, shop_id, operation, count, _PERIOD_DAY)

        month_ok = await _conditional_increment(
            session, shop_id, operation, _PERIOD_MONTH, month_start, count, limits.monthly, now
        )
        if not month_ok:
            # The day row is still locked by this transaction, so compensation is safe.
            await _decrement(session, shop_id, operation, _PERIOD_DAY, day_start, count, now)
            return await self._raise_blocked(session, shop_id, operation, count, _PERIOD_MONTH)

        return await self.get_usage(session, shop_id, operation)

    async def release_quota(
        self,
        session: AsyncSession,
        shop_id: str,
        operation: QuotaOperation,
        count: int,
        *,
        reserved_at: datetime | None = None,
    ) -> None:
        # Return unused reservations to the periods they were taken from.
        if count <= 0:
            return
        when = reserved_at or self._time_provider()
        now = self._time_provider()
        await _decrement(session, shop_id, operation, _PERIOD_DAY, _day_start(when), count, now)
        await _decrement(session, shop_id, operation, _PERIOD_MONTH, _month_start(when), count, now)

    async def _raise_blocked(
        self,
        session: AsyncSession,
        shop_id: str,
        operation: QuotaOperation,
        count: int,
        period: str,
    ) -> QuotaResult:
        usage = await self.get_usage(session, shop_id, operation)
        result = QuotaResult(
            allowed=False,
            operation=operation,
            day=usage.day,
            month=usage.month,
            blocked_period=period,
        )
        logger.info(
            "quota_reserve_blocked shop_id=%s operation=%s period=%s requested=%s",
            shop_id,
            operation,
            period,
            count,
        )
        raise QuotaExceededError(_blocked_message(result), result=result)

    async def _limits(self, session: AsyncSession, shop_id: str, operation: str) -> _Limits:
        # Shop-specific plan rows win; otherwise fall back to configured defaults.
        plan = await shops_repo.get_plan_limit(session, shop_id, operation)
        if plan is not None:
            return _Limits(daily=plan.daily_limit, monthly=plan.monthly_limit)
        settings = self._settings
        if operation == "render":
            return _Limits(
                daily=settings.quota_default_daily_render_limit,
                monthly=settings.quota_default_monthly_render_limit,
            )
        if operation == "prep":
            return _Limits(
                daily=settings.quota_default_daily_prep_limit,
                monthly=settings.quota_default_monthly_prep_limit,
            )
        return _Limits(daily=None, monthly=None)


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def _day_start(now: datetime) -> datetime:
    # Normalize to the UTC day boundary for daily quotas.
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def _month_start(now: datetime) -> datetime:
    # Normalize to the UTC month boundary for monthly quotas.
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def _validate_count(count: int) -> None:
    if count <= 0:
        raise InputValidationError("Quota count must be positive")


def _snapshot(limit: int | None, used: int) -> QuotaSnapshot:
    # Compute remaining values while preserving unlimited semantics.
    if limit is None:
        return QuotaSnapshot(limit=None, used=used, remaining=None)
    remaining = max(limit - used, 0)
    return QuotaSnapshot(limit=limit, used=used, remaining=remaining)


def _blocked_period(usage: QuotaResult, count: int) -> str | None:
    # Month wins when both would overflow; it resets later.
    if usage.month.limit is not None and usage.month.used + count > usage.month.limit:
        return _PERIOD_MONTH
    if usage.day.limit is not None and usage.day.used + count > usage.day.limit:
        return _PERIOD_DAY
    return None


def _blocked_message(result: QuotaResult) -> str:
    if result.blocked_period == _PERIOD_DAY:
        return f"Daily {result.operation} quota exceeded"
    return f"Monthly {result.operation} quota exceeded"


def _counter_key(shop_id: str, operation: str, period_type: str, period_start: datetime):
    return (
        UsageCounter.shop_id == shop_id,
        UsageCounter.operation == operation,
        UsageCounter.period_type == period_type,
        UsageCounter.period_start == period_start,
    )


async def _ensure_counter(
    session: AsyncSession,
    shop_id: str,
    operation: str,
    period_type: str,
    period_start: datetime,
) -> None:
    # Create the period row if missing without failing concurrent creators.
    await session.execute(
        insert_ignore(
            session,
            UsageCounter,
            {
                "shop_id": shop_id,
                "operation": operation,
                "period_type": period_type,
                "period_start": period_start,
                "count": 0,
            },
        )
    )


async def _read_count(
    session: AsyncSession,
    shop_id: str,
    operation: str,
    period_type: str,
    period_start: datetime,
) -> int:
    result = await session.execute(
        select(UsageCounter.count).where(*_counter_key(shop_id, operation, period_type, period_start))
    )
    return int(result.scalar_one_or_none() or 0)


async def _conditional_increment(
    session: AsyncSession,
    shop_id: str,
    operation: str,
    period_type: str,
    period_start: datetime,
    count: int,
    limit: int | None,
    now: datetime,
) -> bool:
    # Compare-and-increment in one statement; rowcount 0 means the limit would be crossed.
    stmt = update(UsageCounter).where(*_counter_key(shop_id, operation, period_type, period_start))
    if limit is not None:
        stmt = stmt.where(UsageCounter.count + count <= limit)
    result = await session.execute(
        stmt.values(count=UsageCounter.count + count, updated_at=now).execution_options(
            synchronize_session=False
        )
    )
    return result.rowcount == 1


async def _decrement(
    session: AsyncSession,
    shop_id: str,
    operation: str,
    period_type: str,
    period_start: datetime,
    count: int,
    now: datetime,
) -> None:
    # Never drive a counter below zero, even on double release.
    await session.execute(
        update(UsageCounter)
        .where(*_counter_key(shop_id, operation, period_type, period_start))
        .values(count=_floor_zero(UsageCounter.count - count), updated_at=now)
        .execution_options(synchronize_session=False)
    )


def _floor_zero(expr):
    return case((expr < 0, 0), else_=expr)


def quota_headers(result: QuotaResult) -> dict[str, str]:
    # Render quota headers for responses with consistent casing.
    return {
        "X-Quota-Operation": result.operation,
        "X-Quota-Day-Limit": _format_limit(result.day.limit),
        "X-Quota-Day-Used": str(result.day.used),
        "X-Quota-Day-Remaining": _format_limit(result.day.remaining),
        "X-Quota-Month-Limit": _format_limit(result.month.limit),
        "X-Quota-Month-Used": str(result.month.used),
        "X-Quota-Month-Remaining": _format_limit(result.month.remaining),
    }


def _format_limit(value: int | None) -> str:
    # Represent unlimited values using the agreed header token.
    return "unlimited" if value is None else str(value)


def quota_error_detail(result: QuotaResult) -> dict[str, object]:
    # Stable 429 payload with period and remaining usage.
    period = result.blocked_period or _PERIOD_MONTH
    snapshot = result.day if period == _PERIOD_DAY else result.month
    return {
        "code": "QUOTA_EXCEEDED",
        "message": _blocked_message(result),
        "operation": result.operation,
        "period": period,
        "limit": snapshot.limit,
        "used": snapshot.used,
        "remaining": snapshot.remaining if snapshot.remaining is not None else "unlimited",
    }
