from __future__ import annotations

import pytest
from google.api_core import exceptions as gcs_exceptions

from roomrender.core.errors import ProviderConfigError, StorageError
from roomrender.providers.storage.gcs import GcsBlobStore


class _FakeBlob:
    def __init__(self, bucket: "_FakeBucket", name: str) -> None:
        self._bucket = bucket
        self.name = name

    def upload_from_string(self, data: bytes, content_type: str | None = None) -> None:
        self._bucket.objects[self.name] = (data, content_type)

    def download_as_bytes(self) -> bytes:
        if self.name not in self._bucket.objects:
            raise gcs_exceptions.NotFound("missing")
        return self._bucket.objects[self.name][0]

    def exists(self) -> bool:
        return self.name in self._bucket.objects

    def delete(self) -> None:
        if self._bucket.objects.pop(self.name, None) is None:
            raise gcs_exceptions.NotFound("missing")


class _FakeBucket:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str | None]] = {}

    def blob(self, name: str) -> _FakeBlob:
        return _FakeBlob(self, name)

    def copy_blob(self, source: _FakeBlob, destination_bucket: "_FakeBucket", new_name: str) -> None:
        if source.name not in self.objects:
            raise gcs_exceptions.NotFound("missing")
        destination_bucket.objects[new_name] = self.objects[source.name]


class _FakeClient:
    def __init__(self) -> None:
        self.bucket_obj = _FakeBucket()

    def bucket(self, name: str) -> _FakeBucket:
        return self.bucket_obj

    def list_blobs(self, bucket: _FakeBucket, prefix: str = ""):
        return [bucket.blob(name) for name in list(bucket.objects) if name.startswith(prefix)]


def test_gcs_store_requires_bucket() -> None:
    with pytest.raises(ProviderConfigError):
        GcsBlobStore(None, client=_FakeClient())


@pytest.mark.asyncio
async def test_gcs_store_roundtrip_and_copy() -> None:
    client = _FakeClient()
    store = GcsBlobStore("renders", client=client)

    await store.upload("rooms/1/a.png", b"png", content_type="image/png")
    assert await store.exists("rooms/1/a.png")
    assert await store.download("rooms/1/a.png") == b"png"
    assert client.bucket_obj.objects["rooms/1/a.png"][1] == "image/png"

    await store.copy("rooms/1/a.png", "saved-rooms/1/a.png")
    assert await store.download("saved-rooms/1/a.png") == b"png"


@pytest.mark.asyncio
async def test_gcs_store_maps_missing_blobs() -> None:
    store = GcsBlobStore("renders", client=_FakeClient())

    with pytest.raises(StorageError):
        await store.download("nope")
    with pytest.raises(StorageError):
        await store.copy("nope", "dest")
    assert await store.delete("nope") is False


@pytest.mark.asyncio
async def test_gcs_store_delete_prefix_counts_removed() -> None:
    client = _FakeClient()
    store = GcsBlobStore("renders", client=client)
    for key in ("runs/7/v1.png", "runs/7/v2.png", "runs/8/v1.png"):
        await store.upload(key, b"x", content_type="image/png")

    assert await store.delete_prefix("runs/7/") == 2
    assert sorted(client.bucket_obj.objects) == ["runs/8/v1.png"]
    assert await store.delete("runs/8/v1.png") is True
