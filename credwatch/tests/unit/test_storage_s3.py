from __future__ import annotations

import hashlib

import pytest

from credwatch.core.errors import (
    NotFoundError,
    StorageConfigError,
    StorageTimeoutError,
    StorageWriteError,
)
from credwatch.services.storage.s3 import S3StorageBackend
from credwatch.services.telemetry import external_latency_by_integration
from credwatch.tests.utils.s3 import InMemoryS3Client


def _backend(client: InMemoryS3Client, **kwargs) -> S3StorageBackend:
    kwargs.setdefault("backoff_ms", 1)
    return S3StorageBackend(bucket_name="hr-documents", client=client, **kwargs)


@pytest.mark.asyncio
async def test_s3_round_trip_uses_encryption_and_storage_class() -> None:
    client = InMemoryS3Client()
    backend = _backend(client)
    data = b"board certificate"

    stored = await backend.write("documents/emp-1/cert.pdf", data, content_type="application/pdf")

    assert stored.integrity_token == hashlib.md5(data).hexdigest()
    assert stored.integrity_token == backend.expected_token(data)
    assert stored.version_id is not None
    extra = client.objects[("hr-documents", "documents/emp-1/cert.pdf")]["extra"]
    assert extra["ServerSideEncryption"] == "AES256"
    assert extra["StorageClass"] == "STANDARD_IA"
    assert extra["ContentType"] == "application/pdf"
    assert await backend.read("documents/emp-1/cert.pdf") == data
    assert "storage.s3" in external_latency_by_integration(60)


@pytest.mark.asyncio
async def test_s3_missing_object_raises_not_found() -> None:
    backend = _backend(InMemoryS3Client())
    with pytest.raises(NotFoundError):
        await backend.read("documents/missing.pdf")
    assert await backend.exists("documents/missing.pdf") is False


@pytest.mark.asyncio
async def test_s3_delete_reports_absence() -> None:
    client = InMemoryS3Client()
    backend = _backend(client)
    await backend.write("k", b"x", content_type="text/plain")

    assert await backend.delete("k") is True
    assert await backend.delete("k") is False
    assert client.calls.count("delete_object") == 1


@pytest.mark.asyncio
async def test_s3_versioned_delete_checks_that_version() -> None:
    client = InMemoryS3Client()
    backend = _backend(client)
    first = await backend.write("k", b"v1", content_type="text/plain")
    second = await backend.write("k", b"v2", content_type="text/plain")

    assert await backend.exists("k", version_id=first.version_id) is False
    assert await backend.delete("k", version_id=first.version_id) is False
    assert client.calls.count("delete_object") == 0
    assert await backend.read("k") == b"v2"

    assert await backend.delete("k", version_id=second.version_id) is True
    assert await backend.exists("k") is False


@pytest.mark.asyncio
async def test_s3_write_failure_retries_then_raises() -> None:
    client = InMemoryS3Client(fail_puts=True)
    backend = _backend(client, max_attempts=3)

    with pytest.raises(StorageWriteError) as excinfo:
        await backend.write("k", b"x", content_type="text/plain")

    assert excinfo.value.backend == "s3"
    assert client.calls.count("put_object") == 3


@pytest.mark.asyncio
async def test_s3_slow_call_maps_to_storage_timeout() -> None:
    backend = _backend(InMemoryS3Client(put_delay_s=0.3), call_timeout_ms=20, max_attempts=1)

    with pytest.raises(StorageTimeoutError):
        await backend.write("k", b"x", content_type="text/plain")


def test_s3_requires_bucket() -> None:
    with pytest.raises(StorageConfigError):
        S3StorageBackend(bucket_name="")


def test_s3_kms_encryption_has_no_predictable_token() -> None:
    backend = S3StorageBackend(bucket_name="b", server_side_encryption="aws:kms", client=InMemoryS3Client())
    assert backend.expected_token(b"x") is None
