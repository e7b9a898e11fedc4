from __future__ import annotations

from typing import Protocol


class BlobStore(Protocol):
    async def upload(self, key: str, data: bytes, *, content_type: str) -> None:
        ...

    async def download(self, key: str) -> bytes:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def copy(self, source_key: str, dest_key: str) -> None:
        ...

    async def delete(self, key: str) -> bool:
        # Return False when the key was already gone.
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def signed_read_url(self, key: str, *, ttl_s: int) -> str:
        ...

    async def signed_upload_url(self, key: str, *, content_type: str, ttl_s: int) -> str:
        ...
