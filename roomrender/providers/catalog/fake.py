from __future__ import annotations

from roomrender.core.errors import CatalogError
from roomrender.providers.catalog.base import CatalogCredentials, CatalogProduct
from roomrender.providers.imagegen.fake import fake_png


class FakeCatalogClient:
    def __init__(
        self,
        products: dict[str, CatalogProduct] | None = None,
        *,
        fail_tags: bool = False,
    ) -> None:
        # Products absent from the mapping behave like deleted catalog entries.
        self.products: dict[str, CatalogProduct] = dict(products or {})
        self.fail_tags = fail_tags
        self.tagged: dict[str, bool] = {}

    def add_product(self, product_id: str, *, title: str = "", with_image: bool = True) -> CatalogProduct:
        product = CatalogProduct(
            product_id=product_id,
            title=title or f"Product {product_id}",
            featured_image_url=f"https://cdn.example.test/{product_id}.png" if with_image else None,
            featured_image_id=f"img-{product_id}" if with_image else None,
        )
        self.products[product_id] = product
        return product

    async def get_products(
        self, credentials: CatalogCredentials, product_ids: list[str]
    ) -> dict[str, CatalogProduct | None]:
        return {product_id: self.products.get(product_id) for product_id in product_ids}

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        return fake_png(f"source:{url}"), "image/png"

    async def set_live_tag(self, credentials: CatalogCredentials, product_id: str, *, live: bool) -> None:
        if self.fail_tags:
            raise CatalogError("fake tag failure")
        self.tagged[product_id] = live
