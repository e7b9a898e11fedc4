from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomrender.domain.models import CompositeRun, VariantResult
from roomrender.domain.states import RunStatus
from roomrender.persistence.dialect import insert_ignore


async def get_run(session: AsyncSession, shop_id: str, run_id: str) -> CompositeRun | None:
    # Return None for shop mismatch to keep 404 semantics.
    result = await session.execute(
        select(CompositeRun).where(CompositeRun.id == run_id, CompositeRun.shop_id == shop_id)
    )
    return result.scalar_one_or_none()


async def get_run_by_id(session: AsyncSession, run_id: str) -> CompositeRun | None:
    result = await session.execute(select(CompositeRun).where(CompositeRun.id == run_id))
    return result.scalar_one_or_none()


async def list_runs(session: AsyncSession, shop_id: str, *, limit: int = 50) -> list[CompositeRun]:
    result = await session.execute(
        select(CompositeRun)
        .where(CompositeRun.shop_id == shop_id)
        .order_by(CompositeRun.created_at.desc(), CompositeRun.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_variant_results(session: AsyncSession, run_id: str) -> list[VariantResult]:
    result = await session.execute(
        select(VariantResult)
        .where(VariantResult.run_id == run_id)
        .order_by(VariantResult.created_at, VariantResult.variant_id)
    )
    return list(result.scalars().all())


async def insert_variant_result(session: AsyncSession, values: dict[str, Any]) -> bool:
    # First write wins per (run_id, variant_id); replays are no-ops.
    result = await session.execute(insert_ignore(session, VariantResult, values))
    return bool(result.rowcount)


def _claimable_run_clause(*, stale_before: datetime):
    return and_(
        CompositeRun.status == RunStatus.IN_FLIGHT.value,
        or_(CompositeRun.claimed_at.is_(None), CompositeRun.claimed_at < stale_before),
    )


async def list_stale_run_ids(
    session: AsyncSession, *, created_before: datetime, stale_before: datetime, limit: int
) -> list[str]:
    result = await session.execute(
        select(CompositeRun.id)
        .where(_claimable_run_clause(stale_before=stale_before), CompositeRun.created_at < created_before)
        .order_by(CompositeRun.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_run(
    session: AsyncSession, run_id: str, *, now: datetime, stale_before: datetime
) -> bool:
    # Conditional update is the claim; a live executor keeps others out.
    result = await session.execute(
        update(CompositeRun)
        .where(CompositeRun.id == run_id, _claimable_run_clause(stale_before=stale_before))
        .values(claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
