from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class ImageInput:
    # Either a provider-side file handle or inline bytes; handles are preferred.
    mime_type: str
    data: bytes | None = None
    file_uri: str | None = None


@dataclass(frozen=True)
class ProviderFile:
    uri: str
    expires_at: datetime


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str


class ImageProvider(Protocol):
    async def upload_file(self, data: bytes, *, mime_type: str, display_name: str) -> ProviderFile:
        ...

    async def remove_background(self, image: ImageInput) -> GeneratedImage:
        ...

    async def remove_objects(self, room: ImageInput, mask: ImageInput | None) -> GeneratedImage:
        ...

    async def generate_composite(
        self,
        *,
        room: ImageInput,
        product: ImageInput,
        prompt: str,
        variant_id: str,
    ) -> GeneratedImage:
        ...
