from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CatalogProduct:
    product_id: str
    title: str
    featured_image_url: str | None
    featured_image_id: str | None


@dataclass(frozen=True)
class CatalogCredentials:
    shop_domain: str
    access_token: str | None


class CatalogClient(Protocol):
    async def get_products(
        self, credentials: CatalogCredentials, product_ids: list[str]
    ) -> dict[str, CatalogProduct | None]:
        ...

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        ...

    async def set_live_tag(self, credentials: CatalogCredentials, product_id: str, *, live: bool) -> None:
        ...
