from __future__ import annotations

import logging
from typing import Any

import httpx

from roomrender.core.errors import CatalogError, ProviderConfigError
from roomrender.providers.catalog.base import CatalogCredentials, CatalogProduct


logger = logging.getLogger(__name__)

_PRODUCTS_QUERY = """
query Products($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on Product {
      id
      title
      featuredImage { id url }
    }
  }
}
"""

_TAGS_ADD = """
mutation TagsAdd($id: ID!, $tags: [String!]!) {
  tagsAdd(id: $id, tags: $tags) { userErrors { field message } }
}
"""

_TAGS_REMOVE = """
mutation TagsRemove($id: ID!, $tags: [String!]!) {
  tagsRemove(id: $id, tags: $tags) { userErrors { field message } }
}
"""


def _gid(product_id: str) -> str:
    # Accept numeric ids or full GraphQL gids.
    if product_id.startswith("gid://"):
        return product_id
    return f"gid://shopify/Product/{product_id}"


class ShopifyCatalogClient:
    def __init__(
        self,
        *,
        api_version: str,
        live_tag: str,
        timeout_ms: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_version = api_version
        self._live_tag = live_tag
        self._timeout = timeout_ms / 1000.0
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _graphql(
        self, credentials: CatalogCredentials, query: str, variables: dict[str, Any]
    ) -> dict[str, Any]:
        if not credentials.access_token:
            raise ProviderConfigError(f"Shop {credentials.shop_domain} has no access token")
        url = f"https://{credentials.shop_domain}/admin/api/{self._api_version}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": credentials.access_token,
        }
        try:
            async with self._client() as client:
                response = await client.post(url, json={"query": query, "variables": variables}, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CatalogError(f"Catalog request failed for {credentials.shop_domain}") from exc
        payload = response.json()
        if payload.get("errors"):
            raise CatalogError(f"Catalog query errors: {payload['errors']}")
        return payload.get("data") or {}

    async def get_products(
        self, credentials: CatalogCredentials, product_ids: list[str]
    ) -> dict[str, CatalogProduct | None]:
        data = await self._graphql(
            credentials, _PRODUCTS_QUERY, {"ids": [_gid(product_id) for product_id in product_ids]}
        )
        nodes = data.get("nodes") or []
        products: dict[str, CatalogProduct | None] = {}
        # nodes() preserves request order and yields null for unknown ids.
        for product_id, node in zip(product_ids, nodes):
            if not node or not node.get("id"):
                products[product_id] = None
                continue
            image = node.get("featuredImage") or {}
            products[product_id] = CatalogProduct(
                product_id=product_id,
                title=node.get("title") or "",
                featured_image_url=image.get("url"),
                featured_image_id=image.get("id"),
            )
        for product_id in product_ids:
            products.setdefault(product_id, None)
        return products

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        try:
            async with self._client() as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CatalogError(f"Image download failed: {url}") from exc
        content_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
        return response.content, content_type

    async def set_live_tag(self, credentials: CatalogCredentials, product_id: str, *, live: bool) -> None:
        mutation = _TAGS_ADD if live else _TAGS_REMOVE
        data = await self._graphql(
            credentials, mutation, {"id": _gid(product_id), "tags": [self._live_tag]}
        )
        result = data.get("tagsAdd" if live else "tagsRemove") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise CatalogError(f"Tag update rejected: {user_errors}")
