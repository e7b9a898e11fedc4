from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomrender.domain.models import ProductAsset
from roomrender.domain.states import AssetStatus
from roomrender.persistence.dialect import insert_ignore


async def get_asset(session: AsyncSession, shop_id: str, product_id: str) -> ProductAsset | None:
    # Lookup-first-match keeps legacy duplicate rows readable.
    result = await session.execute(
        select(ProductAsset)
        .where(ProductAsset.shop_id == shop_id, ProductAsset.product_id == product_id)
        .order_by(ProductAsset.created_at, ProductAsset.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_asset_by_id(session: AsyncSession, asset_id: str) -> ProductAsset | None:
    # Use with care; shop checks should be enforced by callers.
    result = await session.execute(select(ProductAsset).where(ProductAsset.id == asset_id))
    return result.scalar_one_or_none()


async def find_or_create_asset(
    session: AsyncSession,
    *,
    shop_id: str,
    product_id: str,
    defaults: dict[str, Any],
) -> tuple[ProductAsset, bool]:
    # Insert-if-absent on (shop_id, product_id) so concurrent prepares share one row.
    stmt = insert_ignore(
        session,
        ProductAsset,
        {"shop_id": shop_id, "product_id": product_id, **defaults},
    )
    result = await session.execute(stmt)
    created = bool(result.rowcount)
    asset = await get_asset(session, shop_id, product_id)
    if asset is None:
        raise RuntimeError(f"asset row vanished after upsert shop_id={shop_id} product_id={product_id}")
    return asset, created


def _claimable_clause(*, now: datetime, stale_before: datetime, max_retries: int):
    return or_(
        ProductAsset.status == AssetStatus.PENDING.value,
        and_(
            ProductAsset.status == AssetStatus.PREPARING.value,
            ProductAsset.prep_started_at < stale_before,
        ),
        and_(
            ProductAsset.status == AssetStatus.FAILED.value,
            ProductAsset.retry_count < max_retries,
            # Terminal failures carry no next attempt and wait for a manual re-trigger.
            ProductAsset.next_attempt_at.is_not(None),
            ProductAsset.next_attempt_at <= now,
        ),
    )


async def list_claimable_asset_ids(
    session: AsyncSession,
    *,
    now: datetime,
    stale_before: datetime,
    max_retries: int,
    limit: int,
) -> list[str]:
    result = await session.execute(
        select(ProductAsset.id)
        .where(_claimable_clause(now=now, stale_before=stale_before, max_retries=max_retries))
        .order_by(ProductAsset.updated_at)
        .limit(limit)
    )
    return [row for row in result.scalars().all()]


async def claim_asset(
    session: AsyncSession,
    asset_id: str,
    *,
    now: datetime,
    stale_before: datetime,
    max_retries: int,
) -> bool:
    # Conditional update is the claim; only one worker sees rowcount == 1.
    result = await session.execute(
        update(ProductAsset)
        .where(
            ProductAsset.id == asset_id,
            _claimable_clause(now=now, stale_before=stale_before, max_retries=max_retries),
        )
        .values(
            status=AssetStatus.PREPARING.value,
            prep_started_at=now,
            error_message=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
