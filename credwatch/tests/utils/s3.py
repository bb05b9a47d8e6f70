from __future__ import annotations

import asyncio
import hashlib
import io
import time
from typing import Any
from uuid import uuid4

from botocore.exceptions import ClientError

from credwatch.core.errors import StorageWriteError


def _client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class InMemoryS3Client:
    """Synchronous stand-in for a boto3 S3 client with versioned objects."""

    def __init__(self, *, fail_puts: bool = False, put_delay_s: float = 0.0) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []
        self.fail_puts = fail_puts
        self.put_delay_s = put_delay_s

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        self.calls.append("put_object")
        if self.put_delay_s:
            time.sleep(self.put_delay_s)
        if self.fail_puts:
            raise _client_error("InternalError", 500, "PutObject")
        etag = hashlib.md5(Body, usedforsecurity=False).hexdigest()
        version_id = uuid4().hex
        self.objects[(Bucket, Key)] = {
            "body": bytes(Body),
            "etag": etag,
            "version_id": version_id,
            "extra": kwargs,
        }
        return {"ETag": f'"{etag}"', "VersionId": version_id}

    def get_object(self, *, Bucket: str, Key: str, VersionId: str | None = None) -> dict[str, Any]:
        self.calls.append("get_object")
        item = self.objects.get((Bucket, Key))
        if item is None or (VersionId and item["version_id"] != VersionId):
            raise _client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(item["body"]), "ETag": f'"{item["etag"]}"'}

    def head_object(self, *, Bucket: str, Key: str, VersionId: str | None = None) -> dict[str, Any]:
        self.calls.append("head_object")
        item = self.objects.get((Bucket, Key))
        if item is None or (VersionId and item["version_id"] != VersionId):
            raise _client_error("404", 404, "HeadObject")
        return {"ETag": f'"{item["etag"]}"', "ContentLength": len(item["body"])}

    def delete_object(self, *, Bucket: str, Key: str, VersionId: str | None = None) -> dict[str, Any]:
        self.calls.append("delete_object")
        item = self.objects.get((Bucket, Key))
        if item is not None and (not VersionId or item["version_id"] == VersionId):
            del self.objects[(Bucket, Key)]
        return {}

    def head_bucket(self, *, Bucket: str) -> dict[str, Any]:
        self.calls.append("head_bucket")
        return {}


class GatedBackend:
    """Wraps a backend so writes block until a given number of writers have arrived."""

    def __init__(self, inner: Any, *, parties: int) -> None:
        self._inner = inner
        self._parties = parties
        self._arrived = 0
        self._gate = asyncio.Event()
        self.name = inner.name

    async def write(self, key: str, data: bytes, *, content_type: str):
        self._arrived += 1
        if self._arrived >= self._parties:
            self._gate.set()
        await asyncio.wait_for(self._gate.wait(), timeout=5)
        return await self._inner.write(key, data, content_type=content_type)

    def __getattr__(self, item: str) -> Any:
        return getattr(self._inner, item)


class FailingWriteBackend:
    """Delegates everything except write, which always fails like an unreachable backend."""

    def __init__(self, inner: Any) -> None:
        self._inner = inner
        self.name = inner.name

    async def write(self, key: str, data: bytes, *, content_type: str):
        raise StorageWriteError(self.name, ConnectionError("simulated outage"))

    def __getattr__(self, item: str) -> Any:
        return getattr(self._inner, item)
