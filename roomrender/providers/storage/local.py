from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from urllib.parse import quote

from roomrender.core.errors import StorageError


class LocalBlobStore:
    """Filesystem blob store for development and tests.

    Signed URLs are plain links under ``base_url`` with an expiry query
    parameter; nothing verifies them.
    """

    def __init__(self, root: str | Path, *, base_url: str = "http://localhost:8000/blobs") -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        # Keep every key inside the root directory.
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise StorageError(f"Invalid blob key: {key}")
        return path

    async def upload(self, key: str, data: bytes, *, content_type: str) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Upload failed for {key}") from exc

    async def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise StorageError(f"Blob not found: {key}") from exc
        except OSError as exc:
            raise StorageError(f"Download failed for {key}") from exc

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    async def copy(self, source_key: str, dest_key: str) -> None:
        source = self._path(source_key)
        dest = self._path(dest_key)

        def _copy() -> None:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)

        try:
            await asyncio.to_thread(_copy)
        except FileNotFoundError as exc:
            raise StorageError(f"Blob not found: {source_key}") from exc
        except OSError as exc:
            raise StorageError(f"Copy failed for {source_key}") from exc

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Delete failed for {key}") from exc
        return True

    async def delete_prefix(self, prefix: str) -> int:
        target = self._path(prefix.rstrip("/"))
        if not target.exists():
            return 0
        if target.is_file():
            return 1 if await self.delete(prefix) else 0
        count = sum(1 for item in target.rglob("*") if item.is_file())
        try:
            await asyncio.to_thread(shutil.rmtree, target)
        except OSError as exc:
            raise StorageError(f"Prefix delete failed for {prefix}") from exc
        return count

    async def signed_read_url(self, key: str, *, ttl_s: int) -> str:
        expires = int(time.time()) + ttl_s
        return f"{self._base_url}/{quote(key)}?expires={expires}"

    async def signed_upload_url(self, key: str, *, content_type: str, ttl_s: int) -> str:
        expires = int(time.time()) + ttl_s
        return f"{self._base_url}/{quote(key)}?expires={expires}&method=PUT&content_type={quote(content_type)}"
