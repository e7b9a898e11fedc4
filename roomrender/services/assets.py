from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from roomrender.core.errors import (
    CatalogError,
    InputValidationError,
    InvalidTransitionError,
    NotFoundError,
    ProviderConfigError,
    ProviderError,
    StorageError,
)
from roomrender.domain.models import ProductAsset, Shop
from roomrender.domain.states import AssetStatus, transition_asset
from roomrender.persistence.repos import assets as assets_repo
from roomrender.persistence.repos import shops as shops_repo
from roomrender.providers.catalog.base import CatalogCredentials, CatalogProduct
from roomrender.providers.imagegen.base import ImageInput
from roomrender.services import file_cache, monitor
from roomrender.services.container import ServiceContainer
from roomrender.services.images import detect_image_mime, extension_for
from roomrender.services.queue import TaskPayload, enqueue_task
from roomrender.services.resilience import default_retry_policy, retry_async


logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
_MAX_ERROR_CHARS = 500

ERROR_PRODUCT_NOT_FOUND = "Product not found"
ERROR_NO_FEATURED_IMAGE = "No featured image - upload an image first"
ERROR_ALREADY_PREPARING = "Preparation already in progress"


@dataclass(frozen=True)
class PrepareResult:
    asset_id: str
    status: str


@dataclass(frozen=True)
class BatchItemError:
    product_id: str
    error: str


@dataclass(frozen=True)
class BatchPrepareResult:
    queued: int
    asset_ids: list[str] = field(default_factory=list)
    errors: list[BatchItemError] = field(default_factory=list)


@dataclass(frozen=True)
class AssetStatusView:
    asset_id: str
    product_id: str
    status: str
    enabled: bool
    prepared_image_ref: str | None
    prepared_image_version: int
    retry_count: int
    error: str | None


def credentials_for(shop: Shop) -> CatalogCredentials:
    return CatalogCredentials(shop_domain=shop.shop_domain, access_token=shop.access_token)


def _validate_product_id(product_id: str) -> str:
    cleaned = (product_id or "").strip()
    if not cleaned:
        raise InputValidationError("product_id is required")
    return cleaned


def _rejection_reason(product: CatalogProduct | None) -> str | None:
    if product is None:
        return ERROR_PRODUCT_NOT_FOUND
    if not product.featured_image_url:
        return ERROR_NO_FEATURED_IMAGE
    return None


async def _queue_asset(
    session, shop: Shop, product: CatalogProduct, *, strategy: str
) -> tuple[ProductAsset, bool, bool]:
    """Find-or-create the (shop, product) row and move it back to pending.

    Returns the row, whether it was live, and whether it already held a prep
    reservation (pending, or failed with an automatic retry scheduled).
    """
    asset, created = await assets_repo.find_or_create_asset(
        session,
        shop_id=shop.id,
        product_id=product.product_id,
        defaults={
            "status": AssetStatus.PENDING.value,
            "prep_strategy": strategy,
            "product_title": product.title,
            "source_image_url": product.featured_image_url,
            "source_image_id": product.featured_image_id,
        },
    )
    was_live = False
    held_reservation = False
    if not created:
        if asset.status == AssetStatus.PREPARING.value:
            raise InvalidTransitionError(asset.status, AssetStatus.PENDING.value)
        was_live = asset.status == AssetStatus.LIVE.value
        held_reservation = asset.status == AssetStatus.PENDING.value or (
            asset.status == AssetStatus.FAILED.value and asset.next_attempt_at is not None
        )
        if asset.status != AssetStatus.PENDING.value:
            transition_asset(asset, AssetStatus.PENDING)
    asset.prep_strategy = strategy
    asset.product_title = product.title
    asset.source_image_url = product.featured_image_url
    asset.source_image_id = product.featured_image_id
    # Manual and batch triggers start a fresh retry budget.
    asset.retry_count = 0
    asset.error_message = None
    asset.next_attempt_at = None
    return asset, was_live, held_reservation


async def prepare_asset(
    container: ServiceContainer,
    shop: Shop,
    product_id: str,
    *,
    request_id: str | None = None,
) -> PrepareResult:
    product_id = _validate_product_id(product_id)
    products = await container.catalog.get_products(credentials_for(shop), [product_id])
    product = products.get(product_id)
    reason = _rejection_reason(product)
    if reason == ERROR_PRODUCT_NOT_FOUND:
        raise NotFoundError(reason)
    if reason is not None:
        raise InputValidationError(reason)

    async with container.session_factory() as session:
        await container.quota.reserve_quota(session, shop.id, "prep", 1)
        asset, was_live, held = await _queue_asset(session, shop, product, strategy="manual")
        if held:
            # The queued attempt is already paid for; hand the new unit back.
            await container.quota.release_quota(session, shop.id, "prep", 1)
        await session.commit()

    if was_live:
        await sync_live_tag(container, shop, asset.product_id, live=False)
    monitor.emit(
        container,
        type=monitor.EVENT_PREP_QUEUED,
        source="assets",
        shop_id=shop.id,
        request_id=request_id,
        payload={"asset_id": asset.id, "product_id": product_id, "strategy": "manual"},
    )
    await enqueue_task(
        container, TaskPayload(task="prepare_asset", entity_id=asset.id, request_id=request_id)
    )
    return PrepareResult(asset_id=asset.id, status=AssetStatus.PENDING.value)


async def batch_prepare(
    container: ServiceContainer,
    shop: Shop,
    product_ids: list[str],
    *,
    request_id: str | None = None,
) -> BatchPrepareResult:
    """Queue preparation for many products after reserving quota for all of them.

    The reservation for the whole batch is committed before any item is
    touched; reservations for items rejected synchronously are returned.
    """
    unique_ids: list[str] = []
    for raw_id in product_ids or []:
        product_id = _validate_product_id(raw_id)
        if product_id not in unique_ids:
            unique_ids.append(product_id)
    if not unique_ids:
        raise InputValidationError("product_ids must not be empty")
    if len(unique_ids) > MAX_BATCH_SIZE:
        raise InputValidationError(f"At most {MAX_BATCH_SIZE} products per batch")

    async with container.session_factory() as session:
        await container.quota.reserve_quota(session, shop.id, "prep", len(unique_ids))
        await session.commit()

    try:
        products = await container.catalog.get_products(credentials_for(shop), unique_ids)
    except Exception:
        async with container.session_factory() as session:
            await container.quota.release_quota(session, shop.id, "prep", len(unique_ids))
            await session.commit()
        raise

    errors: list[BatchItemError] = []
    queued: list[ProductAsset] = []
    untagged: list[str] = []
    already_reserved = 0
    async with container.session_factory() as session:
        for product_id in unique_ids:
            product = products.get(product_id)
            reason = _rejection_reason(product)
            if reason is not None:
                errors.append(BatchItemError(product_id=product_id, error=reason))
                continue
            try:
                asset, was_live, held = await _queue_asset(session, shop, product, strategy="batch")
            except InvalidTransitionError:
                errors.append(BatchItemError(product_id=product_id, error=ERROR_ALREADY_PREPARING))
                continue
            queued.append(asset)
            already_reserved += int(held)
            if was_live:
                untagged.append(product_id)
        unused = len(errors) + already_reserved
        if unused:
            await container.quota.release_quota(session, shop.id, "prep", unused)
        await session.commit()

    for product_id in untagged:
        await sync_live_tag(container, shop, product_id, live=False)
    monitor.emit(
        container,
        type=monitor.EVENT_PREP_QUEUED,
        source="assets",
        shop_id=shop.id,
        request_id=request_id,
        payload={
            "strategy": "batch",
            "queued": len(queued),
            "rejected": [{"product_id": item.product_id, "error": item.error} for item in errors],
        },
    )
    for asset in queued:
        await enqueue_task(
            container, TaskPayload(task="prepare_asset", entity_id=asset.id, request_id=request_id)
        )
    return BatchPrepareResult(
        queued=len(queued),
        asset_ids=[asset.id for asset in queued],
        errors=errors,
    )


def _failure_reason(exc: Exception) -> str:
    # Return short, actionable messages without leaking stack traces.
    if isinstance(exc, (InputValidationError, ProviderError)):
        message = str(exc)
    elif isinstance(exc, StorageError):
        message = f"Storage error: {exc}"
    elif isinstance(exc, CatalogError):
        message = f"Could not download source image: {exc}"
    else:
        message = "Preparation failed; retry or check worker logs"
    return message[:_MAX_ERROR_CHARS]


async def process_asset(container: ServiceContainer, asset_id: str) -> bool:
    """Claim one asset and run background removal; returns True on success."""
    settings = container.settings
    now = container.clock()
    stale_before = now - timedelta(seconds=settings.prep_stale_after_s)
    async with container.session_factory() as session:
        claimed = await assets_repo.claim_asset(
            session,
            asset_id,
            now=now,
            stale_before=stale_before,
            max_retries=container.prep_retry.max_retries,
        )
        await session.commit()
    if not claimed:
        logger.info("asset_claim_skipped asset_id=%s", asset_id)
        return False

    async with container.session_factory() as session:
        asset = await assets_repo.get_asset_by_id(session, asset_id)
        shop = await shops_repo.get_shop(session, asset.shop_id) if asset else None
    if asset is None or shop is None:
        logger.warning("asset_vanished_after_claim asset_id=%s", asset_id)
        return False

    monitor.emit(
        container,
        type=monitor.EVENT_PREP_STARTED,
        source="worker",
        shop_id=shop.id,
        payload={"asset_id": asset.id, "product_id": asset.product_id, "attempt": asset.retry_count + 1},
    )

    try:
        if not asset.source_image_url:
            raise InputValidationError(ERROR_NO_FEATURED_IMAGE)
        source_url = asset.source_image_url
        data, _declared_type = await retry_async(
            lambda: container.catalog.fetch_image(source_url),
            policy=default_retry_policy(settings),
        )
        mime_type = detect_image_mime(data)
        if mime_type is None:
            raise InputValidationError("Source image is not a supported format")
        prepared = await container.image_provider.remove_background(ImageInput(mime_type=mime_type, data=data))
        version = asset.prepared_image_version + 1
        key = f"assets/{shop.id}/{asset.id}/prepared-v{version}.{extension_for(prepared.mime_type)}"
        await container.blob_store.upload(key, prepared.data, content_type=prepared.mime_type)
    except Exception as exc:  # noqa: BLE001 - failures are persisted on the asset
        await _mark_failed(container, shop, asset_id, exc)
        return False

    went_live = False
    async with container.session_factory() as session:
        current = await assets_repo.get_asset_by_id(session, asset_id)
        if current is None or current.status != AssetStatus.PREPARING.value:
            # Re-triggered or deleted mid-flight; the newer request owns the row.
            logger.info("asset_prepare_result_discarded asset_id=%s", asset_id)
            return False
        target = AssetStatus.LIVE if current.enabled else AssetStatus.READY
        transition_asset(current, target)
        current.prepared_image_key = key
        current.prepared_image_version = version
        current.retry_count = 0
        current.error_message = None
        current.next_attempt_at = None
        current.prep_started_at = None
        # Same transaction as the image write.
        file_cache.invalidate(current)
        await session.commit()
        went_live = target == AssetStatus.LIVE

    if went_live:
        await sync_live_tag(container, shop, asset.product_id, live=True)
    monitor.emit(
        container,
        type=monitor.EVENT_PREP_COMPLETED,
        source="worker",
        shop_id=shop.id,
        payload={"asset_id": asset_id, "version": version, "status": target.value},
    )
    logger.info("asset_prepared asset_id=%s version=%s status=%s", asset_id, version, target.value)
    return True


async def _mark_failed(container: ServiceContainer, shop: Shop, asset_id: str, exc: Exception) -> None:
    # Persist the failure and schedule the next automatic attempt, if any.
    now = container.clock()
    policy = container.prep_retry
    reason = _failure_reason(exc)
    terminal = False
    async with container.session_factory() as session:
        asset = await assets_repo.get_asset_by_id(session, asset_id)
        if asset is None or asset.status != AssetStatus.PREPARING.value:
            return
        transition_asset(asset, AssetStatus.FAILED)
        asset.retry_count += 1
        asset.error_message = reason
        asset.prep_started_at = None
        if isinstance(exc, InputValidationError):
            asset.next_attempt_at = None
        else:
            asset.next_attempt_at = policy.next_attempt_at(asset.retry_count, now)
        terminal = asset.next_attempt_at is None
        if terminal:
            # No further automatic work will bill this reservation.
            await container.quota.release_quota(session, shop.id, "prep", 1)
        await session.commit()
        retry_count = asset.retry_count
    logger.warning(
        "asset_prepare_failed asset_id=%s retry_count=%s terminal=%s error=%s",
        asset_id,
        retry_count,
        terminal,
        reason,
    )
    monitor.emit(
        container,
        type=monitor.EVENT_PREP_FAILED,
        source="worker",
        severity="error",
        shop_id=shop.id,
        payload={"asset_id": asset_id, "retry_count": retry_count, "terminal": terminal, "error": reason},
    )


async def sync_live_tag(container: ServiceContainer, shop: Shop, product_id: str, *, live: bool) -> bool:
    # Best-effort mirror of live status into the origin catalog.
    try:
        await container.catalog.set_live_tag(credentials_for(shop), product_id, live=live)
    except (CatalogError, ProviderConfigError) as exc:
        logger.warning("live_tag_sync_failed shop_id=%s product_id=%s live=%s error=%s", shop.id, product_id, live, exc)
        return False
    monitor.emit(
        container,
        type=monitor.EVENT_ASSET_LIVE_CHANGED,
        source="assets",
        shop_id=shop.id,
        payload={"product_id": product_id, "live": live},
    )
    return True


async def set_enabled(
    container: ServiceContainer,
    shop: Shop,
    product_id: str,
    enabled: bool,
) -> AssetStatusView:
    """Toggle storefront visibility.

    ready + enable moves to live and live + disable moves back to ready,
    keeping the prepared image. Other statuses only record the flag, which
    decides the status reached when preparation finishes.
    """
    product_id = _validate_product_id(product_id)
    async with container.session_factory() as session:
        asset = await assets_repo.get_asset(session, shop.id, product_id)
        if asset is None:
            raise NotFoundError("Asset not found")
        previous = asset.status
        asset.enabled = enabled
        if enabled and asset.status == AssetStatus.READY.value:
            transition_asset(asset, AssetStatus.LIVE)
        elif not enabled and asset.status == AssetStatus.LIVE.value:
            transition_asset(asset, AssetStatus.READY)
        await session.commit()
        current = asset.status

    if previous != current and AssetStatus.LIVE.value in (previous, current):
        await sync_live_tag(container, shop, product_id, live=current == AssetStatus.LIVE.value)
    return await get_asset_status(container, shop, product_id)


async def update_render_instructions(
    container: ServiceContainer,
    shop: Shop,
    product_id: str,
    instructions: str | None,
    *,
    placement_hints: dict | None = None,
) -> AssetStatusView:
    product_id = _validate_product_id(product_id)
    text = (instructions or "").strip() or None
    if text is not None and len(text) > 2000:
        raise InputValidationError("render_instructions must be at most 2000 characters")
    async with container.session_factory() as session:
        asset = await assets_repo.get_asset(session, shop.id, product_id)
        if asset is None:
            raise NotFoundError("Asset not found")
        asset.render_instructions = text
        if placement_hints is not None:
            asset.placement_hints = placement_hints
        await session.commit()
    return await get_asset_status(container, shop, product_id)


async def get_asset_status(container: ServiceContainer, shop: Shop, product_id: str) -> AssetStatusView:
    product_id = _validate_product_id(product_id)
    async with container.session_factory() as session:
        asset = await assets_repo.get_asset(session, shop.id, product_id)
    if asset is None:
        raise NotFoundError("Asset not found")
    image_ref = None
    if asset.prepared_image_key:
        image_ref = await container.blob_store.signed_read_url(
            asset.prepared_image_key, ttl_s=container.settings.signed_url_ttl_s
        )
    return AssetStatusView(
        asset_id=asset.id,
        product_id=asset.product_id,
        status=asset.status,
        enabled=asset.enabled,
        prepared_image_ref=image_ref,
        prepared_image_version=asset.prepared_image_version,
        retry_count=asset.retry_count,
        error=asset.error_message,
    )


async def list_claimable_assets(container: ServiceContainer, *, limit: int) -> list[str]:
    now = container.clock()
    async with container.session_factory() as session:
        return await assets_repo.list_claimable_asset_ids(
            session,
            now=now,
            stale_before=now - timedelta(seconds=container.settings.prep_stale_after_s),
            max_retries=container.prep_retry.max_retries,
            limit=limit,
        )
