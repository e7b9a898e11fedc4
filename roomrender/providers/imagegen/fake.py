from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Callable

from roomrender.core.errors import ProviderError
from roomrender.providers.imagegen.base import GeneratedImage, ImageInput, ProviderFile


# Minimal valid PNG header so magic-byte checks accept fake output.
_PNG_PREFIX = b"\x89PNG\r\n\x1a\n"


def fake_png(tag: str) -> bytes:
    return _PNG_PREFIX + hashlib.sha256(tag.encode("utf-8")).digest()


class FakeImageProvider:
    """Deterministic in-process provider for tests and local development.

    ``fail_when`` and ``hang_when`` receive the operation name and a key (the
    variant id for composites, the display name for uploads, otherwise the
    operation name) and decide whether the call raises or never returns.
    """

    def __init__(
        self,
        *,
        fail_when: Callable[[str, str], bool] | None = None,
        hang_when: Callable[[str, str], bool] | None = None,
        fail_uploads: bool = False,
        file_ttl: timedelta = timedelta(hours=47),
        delay_s: float = 0.0,
    ) -> None:
        self._fail_when = fail_when or (lambda _op, _key: False)
        self._hang_when = hang_when or (lambda _op, _key: False)
        self._fail_uploads = fail_uploads
        self._file_ttl = file_ttl
        self._delay_s = delay_s
        self.calls: list[tuple[str, str]] = []
        self.uploads: list[str] = []

    async def _gate(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._hang_when(operation, key):
            # Park until cancelled by the caller's deadline.
            await asyncio.Event().wait()
        if self._fail_when(operation, key):
            raise ProviderError(f"fake {operation} failure for {key}")

    async def upload_file(self, data: bytes, *, mime_type: str, display_name: str) -> ProviderFile:
        if self._fail_uploads:
            raise ProviderError("fake upload failure")
        await self._gate("upload", display_name)
        digest = hashlib.sha256(data).hexdigest()[:16]
        uri = f"fake://files/{display_name}/{digest}/{len(self.uploads)}"
        self.uploads.append(uri)
        return ProviderFile(uri=uri, expires_at=datetime.now(timezone.utc) + self._file_ttl)

    async def remove_background(self, image: ImageInput) -> GeneratedImage:
        await self._gate("remove_background", "remove_background")
        return GeneratedImage(data=fake_png(f"prepared:{image.file_uri or len(image.data or b'')}"), mime_type="image/png")

    async def remove_objects(self, room: ImageInput, mask: ImageInput | None) -> GeneratedImage:
        await self._gate("remove_objects", "remove_objects")
        return GeneratedImage(data=fake_png(f"cleaned:{room.file_uri or len(room.data or b'')}"), mime_type="image/png")

    async def generate_composite(
        self,
        *,
        room: ImageInput,
        product: ImageInput,
        prompt: str,
        variant_id: str,
    ) -> GeneratedImage:
        await self._gate("generate_composite", variant_id)
        return GeneratedImage(data=fake_png(f"composite:{variant_id}:{prompt}"), mime_type="image/png")
