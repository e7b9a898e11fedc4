from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roomrender.core.config import Settings, get_settings
from roomrender.core.errors import ProviderConfigError
from roomrender.persistence.db import SessionLocal
from roomrender.providers.catalog.base import CatalogClient
from roomrender.providers.catalog.fake import FakeCatalogClient
from roomrender.providers.catalog.shopify import ShopifyCatalogClient
from roomrender.providers.imagegen.base import ImageProvider
from roomrender.providers.imagegen.fake import FakeImageProvider
from roomrender.providers.imagegen.gemini import GeminiImageProvider
from roomrender.providers.storage.base import BlobStore
from roomrender.providers.storage.gcs import GcsBlobStore
from roomrender.providers.storage.local import LocalBlobStore
from roomrender.services.quota import QuotaService
from roomrender.services.resilience import Bulkhead, PrepRetryPolicy, prep_retry_policy


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ServiceContainer:
    """Everything a request handler or worker job needs, built once per process.

    External clients are constructed here and passed down explicitly; nothing
    below this layer reaches for a module-level client.
    """

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    image_provider: ImageProvider
    blob_store: BlobStore
    catalog: CatalogClient
    quota: QuotaService
    prep_retry: PrepRetryPolicy
    variant_bulkhead: Bulkhead
    clock: Callable[[], datetime] = _utc_now
    redis_pool: Any | None = None
    # Strong references keep fire-and-forget tasks alive until they finish.
    background_tasks: set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def drain(self) -> None:
        # Wait for outstanding fire-and-forget work, e.g. on shutdown or in tests.
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self.redis_pool is not None:
            await self.redis_pool.aclose()
            self.redis_pool = None


def _build_image_provider(settings: Settings) -> ImageProvider:
    provider = (settings.image_provider or "gemini").lower()
    if provider == "fake":
        return FakeImageProvider()
    if provider == "gemini":
        return GeminiImageProvider(
            api_key=settings.gemini_api_key,
            composite_model=settings.gemini_image_model,
            prep_model=settings.gemini_prep_model,
            file_ttl_s=settings.provider_file_ttl_s,
        )
    raise ProviderConfigError(f"Unknown image provider: {settings.image_provider}")


def _build_blob_store(settings: Settings) -> BlobStore:
    backend = (settings.blob_backend or "gcs").lower()
    if backend == "local":
        return LocalBlobStore(settings.local_blob_root, base_url=settings.local_blob_base_url)
    if backend == "gcs":
        return GcsBlobStore(settings.gcs_bucket)
    raise ProviderConfigError(f"Unknown blob backend: {settings.blob_backend}")


def _build_catalog(settings: Settings) -> CatalogClient:
    provider = (settings.catalog_provider or "shopify").lower()
    if provider == "fake":
        return FakeCatalogClient()
    if provider == "shopify":
        return ShopifyCatalogClient(
            api_version=settings.shopify_api_version,
            live_tag=settings.shopify_live_tag,
            timeout_ms=settings.shopify_timeout_ms,
        )
    raise ProviderConfigError(f"Unknown catalog provider: {settings.catalog_provider}")


def build_container(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    image_provider: ImageProvider | None = None,
    blob_store: BlobStore | None = None,
    catalog: CatalogClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ServiceContainer:
    # Composition root: explicit overrides win, otherwise settings pick implementations.
    settings = settings or get_settings()
    if session_factory is None:
        session_factory = SessionLocal
    clock = clock or _utc_now
    container = ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        image_provider=image_provider or _build_image_provider(settings),
        blob_store=blob_store or _build_blob_store(settings),
        catalog=catalog or _build_catalog(settings),
        quota=QuotaService(settings=settings, time_provider=clock),
        prep_retry=prep_retry_policy(settings),
        variant_bulkhead=Bulkhead("variants", settings.variant_max_concurrency),
        clock=clock,
    )
    logger.info(
        "service_container_built image_provider=%s blob_backend=%s catalog=%s execution_mode=%s",
        type(container.image_provider).__name__,
        type(container.blob_store).__name__,
        type(container.catalog).__name__,
        settings.execution_mode,
    )
    return container
