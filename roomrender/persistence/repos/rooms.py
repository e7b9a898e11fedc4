from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomrender.domain.models import RenderJob, RoomSession
from roomrender.domain.states import JobStatus


async def get_room_session(session: AsyncSession, shop_id: str, session_id: str) -> RoomSession | None:
    # Return None for shop mismatch to keep 404 semantics.
    result = await session.execute(
        select(RoomSession).where(RoomSession.id == session_id, RoomSession.shop_id == shop_id)
    )
    return result.scalar_one_or_none()


async def get_room_session_by_id(session: AsyncSession, session_id: str) -> RoomSession | None:
    result = await session.execute(select(RoomSession).where(RoomSession.id == session_id))
    return result.scalar_one_or_none()


async def list_expired_room_sessions(
    session: AsyncSession, *, now: datetime, limit: int
) -> list[RoomSession]:
    result = await session.execute(
        select(RoomSession)
        .where(RoomSession.expires_at < now)
        .order_by(RoomSession.expires_at, RoomSession.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_job(session: AsyncSession, shop_id: str, job_id: str) -> RenderJob | None:
    result = await session.execute(
        select(RenderJob).where(RenderJob.id == job_id, RenderJob.shop_id == shop_id)
    )
    return result.scalar_one_or_none()


async def get_job_by_id(session: AsyncSession, job_id: str) -> RenderJob | None:
    result = await session.execute(select(RenderJob).where(RenderJob.id == job_id))
    return result.scalar_one_or_none()


def _claimable_job_clause(*, stale_before: datetime):
    return or_(
        RenderJob.status == JobStatus.QUEUED.value,
        and_(RenderJob.status == JobStatus.PROCESSING.value, RenderJob.started_at < stale_before),
    )


async def list_claimable_job_ids(
    session: AsyncSession, *, stale_before: datetime, limit: int
) -> list[str]:
    result = await session.execute(
        select(RenderJob.id)
        .where(_claimable_job_clause(stale_before=stale_before))
        .order_by(RenderJob.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_job(
    session: AsyncSession, job_id: str, *, now: datetime, stale_before: datetime
) -> bool:
    # Conditional update is the claim; losers see rowcount == 0.
    result = await session.execute(
        update(RenderJob)
        .where(RenderJob.id == job_id, _claimable_job_clause(stale_before=stale_before))
        .values(
            status=JobStatus.PROCESSING.value,
            started_at=now,
            attempts=RenderJob.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
