from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy import delete, select

from roomrender.core.errors import InputValidationError, NotFoundError, StorageError
from roomrender.domain.models import (
    CompositeRun,
    MonitorArtifact,
    MonitorEvent,
    PlanLimit,
    ProductAsset,
    RenderJob,
    RoomSession,
    SavedRoom,
    Shop,
    UsageCounter,
    VariantResult,
)
from roomrender.persistence.repos import shops as shops_repo
from roomrender.services.container import ServiceContainer


logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9.-]{1,253}[a-z0-9]$")

# Per-tenant blob prefixes removed on redact.
_SHOP_PREFIXES = ("assets", "rooms", "renders", "saved-rooms", "monitor")


@dataclass(frozen=True)
class RedactResult:
    shop_domain: str
    existed: bool
    runs_deleted: int
    blobs_deleted: int


def normalize_domain(shop_domain: str) -> str:
    domain = (shop_domain or "").strip().lower()
    if not _DOMAIN_RE.match(domain):
        raise InputValidationError("Invalid shop domain")
    return domain


async def resolve_shop(container: ServiceContainer, shop_domain: str) -> Shop:
    # Unknown and uninstalled shops both look absent to callers.
    domain = normalize_domain(shop_domain)
    async with container.session_factory() as session:
        shop = await shops_repo.get_active_shop(session, domain)
    if shop is None:
        raise NotFoundError("Shop not found")
    return shop


async def install_shop(
    container: ServiceContainer,
    shop_domain: str,
    *,
    access_token: str | None = None,
    plan: str | None = None,
) -> Shop:
    """Create the tenant, or reactivate it after an uninstall."""
    domain = normalize_domain(shop_domain)
    now = container.clock()
    async with container.session_factory() as session:
        shop = await shops_repo.get_shop_by_domain(session, domain)
        if shop is None:
            shop = Shop(shop_domain=domain, plan=plan or "free", installed_at=now)
            session.add(shop)
        elif shop.uninstalled_at is not None:
            shop.installed_at = now
            shop.uninstalled_at = None
        if access_token is not None:
            shop.access_token = access_token
        if plan is not None:
            shop.plan = plan
        await session.commit()
    logger.info("shop_installed shop_id=%s domain=%s", shop.id, domain)
    return shop


async def uninstall_shop(container: ServiceContainer, shop_domain: str) -> bool:
    # Soft delete: data stays until a redact request arrives.
    domain = normalize_domain(shop_domain)
    async with container.session_factory() as session:
        shop = await shops_repo.get_shop_by_domain(session, domain)
        if shop is None:
            return False
        if shop.uninstalled_at is None:
            shop.uninstalled_at = container.clock()
            shop.access_token = None
        await session.commit()
    logger.info("shop_uninstalled shop_id=%s domain=%s", shop.id, domain)
    return True


async def redact_shop(container: ServiceContainer, shop_domain: str) -> RedactResult:
    """Hard-delete a tenant with every child row and stored blob.

    Child tables are deleted explicitly, children before parents, so the
    result does not depend on database-level cascades. Safe to repeat.
    """
    domain = normalize_domain(shop_domain)
    async with container.session_factory() as session:
        shop = await shops_repo.get_shop_by_domain(session, domain)
        if shop is None:
            return RedactResult(shop_domain=domain, existed=False, runs_deleted=0, blobs_deleted=0)
        shop_id = shop.id
        run_ids = list(
            (await session.execute(select(CompositeRun.id).where(CompositeRun.shop_id == shop_id))).scalars().all()
        )

    # Blobs first; rows are only removed once their objects are gone.
    blobs_deleted = 0
    try:
        for run_id in run_ids:
            blobs_deleted += await container.blob_store.delete_prefix(f"runs/{run_id}/")
        for prefix in _SHOP_PREFIXES:
            blobs_deleted += await container.blob_store.delete_prefix(f"{prefix}/{shop_id}/")
    except StorageError:
        logger.exception("shop_redact_blob_cleanup_failed shop_id=%s", shop_id)
        raise

    async with container.session_factory() as session:
        if run_ids:
            await session.execute(delete(VariantResult).where(VariantResult.run_id.in_(run_ids)))
        for model in (
            CompositeRun,
            RenderJob,
            SavedRoom,
            RoomSession,
            ProductAsset,
            UsageCounter,
            PlanLimit,
            MonitorEvent,
            MonitorArtifact,
        ):
            await session.execute(delete(model).where(model.shop_id == shop_id))
        await session.execute(delete(Shop).where(Shop.id == shop_id))
        await session.commit()

    logger.info("shop_redacted shop_id=%s runs=%s blobs=%s", shop_id, len(run_ids), blobs_deleted)
    return RedactResult(shop_domain=domain, existed=True, runs_deleted=len(run_ids), blobs_deleted=blobs_deleted)
