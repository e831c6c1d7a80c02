"""Tests for sketchworks.core.storage — artifact upload and cleanup.

Tests cover:
- Key layout and public URLs.
- Local and S3 backends (S3 through botocore's Stubber).
- Mapping backend failures to STORAGE_UNAVAILABLE.
- Best-effort deletes on the cleanup channel.
"""

from __future__ import annotations

from pathlib import Path

import boto3
import pytest
from botocore.stub import Stubber

from sketchworks.core.errors import InfrastructureError
from sketchworks.core.storage import (
    CACHE_CONTROL,
    LocalStorageBackend,
    S3StorageBackend,
    StorageBackendError,
    StorageUploader,
    storage_key,
)

pytestmark = pytest.mark.anyio


def _s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


class TestKeys:
    def test_storage_key_layout(self, clock):
        assert storage_key("abc", "image/png", clock()) == "assets/2025-01-01/abc.png"
        assert storage_key("abc", "image/jpeg", clock()) == "assets/2025-01-01/abc.jpg"

    def test_url_round_trip(self, memory_backend):
        uploader = StorageUploader(memory_backend, "https://cdn.example.com/")
        url = uploader.url_for("assets/2025-01-01/abc.png")
        assert url == "https://cdn.example.com/assets/2025-01-01/abc.png"
        assert uploader.key_for(url) == "assets/2025-01-01/abc.png"

    def test_bare_keys_without_base_url(self, memory_backend):
        uploader = StorageUploader(memory_backend)
        assert uploader.url_for("assets/x.png") == "assets/x.png"


class TestUpload:
    async def test_upload_writes_with_cache_policy(self, memory_backend, clock):
        uploader = StorageUploader(memory_backend, "/static", clock=clock)
        url = await uploader.upload(b"png-bytes", "asset-1", "image/png")

        assert url == "/static/assets/2025-01-01/asset-1.png"
        data, content_type, cache_control = memory_backend.objects["assets/2025-01-01/asset-1.png"]
        assert data == b"png-bytes"
        assert content_type == "image/png"
        assert cache_control == CACHE_CONTROL == "public, max-age=31536000, immutable"

    async def test_backend_failure_is_retryable(self, memory_backend, clock):
        memory_backend.fail_puts = 1
        uploader = StorageUploader(memory_backend, "/static", clock=clock)

        with pytest.raises(InfrastructureError) as exc_info:
            await uploader.upload(b"png-bytes", "asset-1", "image/png")

        assert exc_info.value.code == "STORAGE_UNAVAILABLE"
        assert exc_info.value.retryable is True

    async def test_scheduled_deletes(self, memory_backend, clock):
        uploader = StorageUploader(memory_backend, "/static", clock=clock)
        uploader.start()
        url = await uploader.upload(b"png-bytes", "asset-1", "image/png")

        assert uploader.schedule_delete([url, None]) == 1
        await uploader.stop()

        assert memory_backend.objects == {}
        assert memory_backend.deleted == ["assets/2025-01-01/asset-1.png"]


class TestLocalStorageBackend:
    def test_put_and_delete(self, temp_dir: Path):
        backend = LocalStorageBackend(temp_dir / "store")
        backend.put("assets/2025-01-01/a.png", b"data", "image/png", CACHE_CONTROL)

        path = temp_dir / "store" / "assets" / "2025-01-01" / "a.png"
        assert path.read_bytes() == b"data"

        backend.delete("assets/2025-01-01/a.png")
        assert not path.exists()
        # Deleting again is not an error.
        backend.delete("assets/2025-01-01/a.png")

    def test_key_cannot_escape_root(self, temp_dir: Path):
        backend = LocalStorageBackend(temp_dir / "store")
        with pytest.raises(StorageBackendError):
            backend.put("../outside.png", b"data", "image/png", CACHE_CONTROL)


class TestS3StorageBackend:
    def test_put_object(self):
        client = _s3_client()
        with Stubber(client) as stubber:
            stubber.add_response(
                "put_object",
                {},
                {
                    "Bucket": "art",
                    "Key": "assets/2025-01-01/a.png",
                    "Body": b"data",
                    "ContentType": "image/png",
                    "CacheControl": CACHE_CONTROL,
                },
            )
            S3StorageBackend("art", client).put(
                "assets/2025-01-01/a.png", b"data", "image/png", CACHE_CONTROL
            )
            stubber.assert_no_pending_responses()

    def test_client_error_is_wrapped(self):
        client = _s3_client()
        with Stubber(client) as stubber:
            stubber.add_client_error("put_object", service_error_code="AccessDenied")
            with pytest.raises(StorageBackendError):
                S3StorageBackend("art", client).put("k", b"data", "image/png", CACHE_CONTROL)

    def test_delete_object(self):
        client = _s3_client()
        with Stubber(client) as stubber:
            stubber.add_response("delete_object", {}, {"Bucket": "art", "Key": "k"})
            S3StorageBackend("art", client).delete("k")
            stubber.assert_no_pending_responses()
