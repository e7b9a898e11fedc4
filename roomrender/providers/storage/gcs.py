from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from roomrender.core.errors import ProviderConfigError, StorageError


logger = logging.getLogger(__name__)


class GcsBlobStore:
    """Blob store backed by a single Google Cloud Storage bucket.

    The client library is synchronous, so each call runs in a worker thread.
    """

    def __init__(self, bucket_name: str | None, *, client: storage.Client | None = None) -> None:
        if not bucket_name:
            raise ProviderConfigError("GCS_BUCKET is required for the gcs blob backend")
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket_name)

    async def upload(self, key: str, data: bytes, *, content_type: str) -> None:
        blob = self._bucket.blob(key)
        try:
            await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Upload failed for {key}") from exc

    async def download(self, key: str) -> bytes:
        blob = self._bucket.blob(key)
        try:
            return await asyncio.to_thread(blob.download_as_bytes)
        except gcs_exceptions.NotFound as exc:
            raise StorageError(f"Blob not found: {key}") from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Download failed for {key}") from exc

    async def exists(self, key: str) -> bool:
        blob = self._bucket.blob(key)
        try:
            return bool(await asyncio.to_thread(blob.exists))
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Existence check failed for {key}") from exc

    async def copy(self, source_key: str, dest_key: str) -> None:
        source = self._bucket.blob(source_key)
        try:
            await asyncio.to_thread(self._bucket.copy_blob, source, self._bucket, dest_key)
        except gcs_exceptions.NotFound as exc:
            raise StorageError(f"Blob not found: {source_key}") from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Copy failed for {source_key}") from exc

    async def delete(self, key: str) -> bool:
        blob = self._bucket.blob(key)
        try:
            await asyncio.to_thread(blob.delete)
        except gcs_exceptions.NotFound:
            return False
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Delete failed for {key}") from exc
        return True

    async def delete_prefix(self, prefix: str) -> int:
        def _delete_all() -> int:
            deleted = 0
            for blob in self._client.list_blobs(self._bucket, prefix=prefix):
                try:
                    blob.delete()
                    deleted += 1
                except gcs_exceptions.NotFound:
                    continue
            return deleted

        try:
            return await asyncio.to_thread(_delete_all)
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"Prefix delete failed for {prefix}") from exc

    async def signed_read_url(self, key: str, *, ttl_s: int) -> str:
        blob = self._bucket.blob(key)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=ttl_s),
            method="GET",
        )

    async def signed_upload_url(self, key: str, *, content_type: str, ttl_s: int) -> str:
        blob = self._bucket.blob(key)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=ttl_s),
            method="PUT",
            content_type=content_type,
        )
