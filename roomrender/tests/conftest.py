from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from roomrender.core.config import Settings, get_settings
from roomrender.domain.models import Base, Shop
from roomrender.providers.catalog.fake import FakeCatalogClient
from roomrender.providers.imagegen.fake import FakeImageProvider
from roomrender.providers.storage.local import LocalBlobStore
from roomrender.services.container import ServiceContainer, build_container
from roomrender.tests.utils.seed import create_shop


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    # Inline execution keeps queue handoff deterministic inside a test.
    values: dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'roomrender.db'}",
        "execution_mode": "inline",
        "image_provider": "fake",
        "blob_backend": "local",
        "local_blob_root": str(tmp_path / "blobs"),
        "catalog_provider": "fake",
        "variant_timeout_ms": 300,
        "prep_retry_backoff_s": 30,
        "ext_retry_backoff_ms": 1,
        "environment": "test",
        "cron_secret": "test-cron-secret",
    }
    values.update(overrides)
    return Settings(**values)


class ContainerFactory:
    """Build containers bound to the per-test database with fake collaborators."""

    def __init__(self, tmp_path: Path, session_factory) -> None:
        self.tmp_path = tmp_path
        self.session_factory = session_factory
        self.built: list[ServiceContainer] = []

    def __call__(
        self,
        *,
        image_provider: FakeImageProvider | None = None,
        catalog: FakeCatalogClient | None = None,
        clock=None,
        **settings_overrides: Any,
    ) -> ServiceContainer:
        settings = make_settings(self.tmp_path, **settings_overrides)
        container = build_container(
            settings,
            session_factory=self.session_factory,
            image_provider=image_provider or FakeImageProvider(),
            blob_store=LocalBlobStore(settings.local_blob_root, base_url=settings.local_blob_base_url),
            catalog=catalog or FakeCatalogClient(),
            clock=clock,
        )
        self.built.append(container)
        return container


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings caches between tests to avoid env leakage.
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path: Path):
    # Fresh SQLite file per test; schema comes straight from the models.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'roomrender.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def make_container(tmp_path: Path, session_factory):
    factory = ContainerFactory(tmp_path, session_factory)
    yield factory
    for container in factory.built:
        await container.close()


@pytest.fixture
async def container(make_container) -> ServiceContainer:
    return make_container()


@pytest.fixture
async def shop(container: ServiceContainer) -> Shop:
    return await create_shop(container)
