from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roomrender.domain.models import PlanLimit, Shop


async def get_shop_by_domain(session: AsyncSession, shop_domain: str) -> Shop | None:
    result = await session.execute(select(Shop).where(Shop.shop_domain == shop_domain))
    return result.scalar_one_or_none()


async def get_active_shop(session: AsyncSession, shop_domain: str) -> Shop | None:
    # Uninstalled shops resolve like unknown shops.
    result = await session.execute(
        select(Shop).where(Shop.shop_domain == shop_domain, Shop.uninstalled_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_shop(session: AsyncSession, shop_id: str) -> Shop | None:
    return await session.get(Shop, shop_id)


async def get_plan_limit(session: AsyncSession, shop_id: str, operation: str) -> PlanLimit | None:
    result = await session.execute(
        select(PlanLimit).where(PlanLimit.shop_id == shop_id, PlanLimit.operation == operation)
    )
    return result.scalar_one_or_none()


async def set_plan_limit(
    session: AsyncSession,
    shop_id: str,
    operation: str,
    *,
    daily_limit: int | None,
    monthly_limit: int | None,
) -> PlanLimit:
    # Upsert through the ORM; plan changes are rare and admin-driven.
    plan = await get_plan_limit(session, shop_id, operation)
    if plan is None:
        plan = PlanLimit(shop_id=shop_id, operation=operation)
        session.add(plan)
    plan.daily_limit = daily_limit
    plan.monthly_limit = monthly_limit
    return plan
