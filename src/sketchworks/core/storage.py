"""Storage uploader for generated artifacts.

Artifacts are written under the key ``assets/{YYYY-MM-DD}/{asset_id}.{ext}``
with the cache policy ``public, max-age=31536000, immutable``; the public URL
is ``{public_base_url}/{key}``.

Backends
--------
- :class:`S3StorageBackend`: boto3 ``put_object`` / ``delete_object``.  boto3
  is synchronous, so calls run in a worker thread via ``asyncio.to_thread``.
- :class:`LocalStorageBackend`: files under a root directory, served by the
  API at ``/static`` during development.

Upload failures raise :class:`~sketchworks.core.errors.InfrastructureError`
with code ``STORAGE_UNAVAILABLE``; the worker retries such jobs later.
Deletes are best-effort and run on a bounded background channel.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .background import BackgroundChannel
from .errors import InfrastructureError
from .images import extension_for
from .models import utcnow

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"


class StorageBackendError(Exception):
    """A backend could not complete a put or delete."""


def storage_key(asset_id: str, content_type: str, moment: datetime) -> str:
    return f"assets/{moment:%Y-%m-%d}/{asset_id}.{extension_for(content_type)}"


class StorageBackend(ABC):
    """Synchronous object store used by :class:`StorageUploader`."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str, cache_control: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class LocalStorageBackend(StorageBackend):
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise StorageBackendError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str, cache_control: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageBackendError(f"Failed to write {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageBackendError(f"Failed to delete {key}: {e}") from e


def create_s3_client(
    region: str,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    session_token: str | None = None,
):
    """Build an S3 client; unset credentials fall back to the boto3 chain."""
    client = boto3.client(
        "s3",
        region_name=region,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        aws_session_token=session_token,
        config=Config(connect_timeout=10, read_timeout=60, retries={"max_attempts": 3}),
    )
    logger.info(f"S3 client initialized for region {region}")
    return client


class S3StorageBackend(StorageBackend):
    def __init__(self, bucket: str, client) -> None:
        self.bucket = bucket
        self.client = client

    def put(self, key: str, data: bytes, content_type: str, cache_control: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=cache_control,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageBackendError(f"S3 put_object failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageBackendError(f"S3 delete_object failed for {key}: {e}") from e


class StorageUploader:
    """Upload artifacts and schedule their deletion.

    Args:
        backend: Object store.
        public_base_url: Prefix for public URLs; an empty string yields bare keys.
        clock: UTC time source used for the date segment of keys.
        cleanup_queue_size: Capacity of the delete channel.
    """

    def __init__(
        self,
        backend: StorageBackend,
        public_base_url: str = "",
        *,
        clock: Callable[[], datetime] = utcnow,
        cleanup_queue_size: int = 100,
    ) -> None:
        self.backend = backend
        self.public_base_url = public_base_url.rstrip("/")
        self._clock = clock
        self.cleanup = BackgroundChannel(
            "storage-cleanup", self.delete_url, maxsize=cleanup_queue_size
        )

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}" if self.public_base_url else key

    def key_for(self, url: str) -> str:
        if self.public_base_url and url.startswith(self.public_base_url + "/"):
            return url[len(self.public_base_url) + 1 :]
        return url.lstrip("/")

    async def upload(self, data: bytes, asset_id: str, content_type: str) -> str:
        """Store an artifact and return its public URL.

        Raises:
            InfrastructureError: ``STORAGE_UNAVAILABLE`` when the backend fails.
        """
        key = storage_key(asset_id, content_type, self._clock())
        try:
            await asyncio.to_thread(self.backend.put, key, data, content_type, CACHE_CONTROL)
        except StorageBackendError as e:
            logger.error(f"Upload failed for asset {asset_id}: {e}")
            raise InfrastructureError(str(e), code="STORAGE_UNAVAILABLE") from e
        url = self.url_for(key)
        logger.info(f"Uploaded {len(data)} bytes for asset {asset_id} to {url}")
        return url

    async def delete_url(self, url: str) -> None:
        await asyncio.to_thread(self.backend.delete, self.key_for(url))
        logger.info(f"Deleted stored artifact {url}")

    def schedule_delete(self, urls: Iterable[str | None]) -> int:
        """Queue deletes without waiting; returns how many were accepted."""
        return sum(1 for url in urls if url and self.cleanup.submit(url))

    def start(self) -> None:
        self.cleanup.start()

    async def stop(self) -> None:
        await self.cleanup.stop(drain=True)
