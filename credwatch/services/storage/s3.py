from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from credwatch.core.errors import (
    IntegrationUnavailableError,
    NotFoundError,
    StorageConfigError,
    StorageError,
    StorageReadError,
    StorageTimeoutError,
    StorageWriteError,
)
from credwatch.services.resilience import RetryPolicy, guarded_call
from credwatch.services.storage.base import StoredObject


logger = logging.getLogger(__name__)

T = TypeVar("T")

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404", "NoSuchVersion"}
# SSE-KMS objects get an opaque ETag; SSE-S3 and unencrypted single-part puts report the MD5.
_MD5_ETAG_ENCRYPTION = {None, "", "AES256"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _http_status(exc: ClientError) -> int | None:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return status if isinstance(status, int) else None


def _is_not_found(exc: Exception) -> bool:
    return isinstance(exc, ClientError) and (_error_code(exc) in _NOT_FOUND_CODES or _http_status(exc) == 404)


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, ClientError):
        status = _http_status(exc)
        return (isinstance(status, int) and status >= 500) or _error_code(exc) in {"SlowDown", "RequestTimeout"}
    return isinstance(exc, BotoCoreError)


def _strip_etag(value: str | None) -> str | None:
    return value.strip('"') if value else None


class S3StorageBackend:
    name = "s3"

    def __init__(
        self,
        *,
        bucket_name: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        server_side_encryption: str | None = "AES256",
        storage_class: str | None = "STANDARD_IA",
        call_timeout_ms: int = 30000,
        max_attempts: int = 3,
        backoff_ms: int = 200,
        client: Any | None = None,
    ) -> None:
        if not bucket_name:
            raise StorageConfigError("bucket_name is required for the s3 backend")
        self._bucket = bucket_name
        self._region = region or "us-east-1"
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._sse = server_side_encryption or None
        self._storage_class = storage_class or None
        self._policy = RetryPolicy(timeout_ms=call_timeout_ms, max_attempts=max_attempts, backoff_ms=backoff_ms)
        self._client = client

    @property
    def bucket_name(self) -> str:
        return self._bucket

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3
            from botocore.config import Config
        except Exception as exc:  # pragma: no cover - environment-specific import
            raise StorageConfigError("AWS SDK not available. Install boto3.") from exc

        timeout_s = max(1, self._policy.timeout_ms // 1000)
        # S3-compatible endpoints (MinIO and similar) need path-style addressing.
        config = Config(
            connect_timeout=timeout_s,
            read_timeout=timeout_s,
            retries={"max_attempts": 1},
            s3={"addressing_style": "path"} if self._endpoint_url else None,
        )
        self._client = boto3.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
            config=config,
        )
        return self._client

    async def _call(
        self,
        operation: str,
        func: Callable[[], T],
        *,
        failure: Callable[[Exception], StorageError],
    ) -> T:
        # Blocking SDK calls run off-loop; a missing key is an answer, not an outage.
        try:
            return await guarded_call(
                "storage.s3",
                lambda: asyncio.to_thread(func),
                policy=self._policy,
                retryable=_retryable,
                benign=_is_not_found,
            )
        except IntegrationUnavailableError as exc:
            raise failure(exc) from exc
        except Exception as exc:
            if _is_not_found(exc):
                raise NotFoundError(f"s3 object not found during {operation}") from exc
            if isinstance(exc, TimeoutError):
                raise StorageTimeoutError(f"s3 {operation} exceeded {self._policy.timeout_ms}ms") from exc
            if isinstance(exc, (BotoCoreError, ClientError, OSError)):
                raise failure(exc) from exc
            raise

    async def write(self, key: str, data: bytes, *, content_type: str) -> StoredObject:
        client = self._get_client()
        request: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "ContentMD5": base64.b64encode(hashlib.md5(data, usedforsecurity=False).digest()).decode("ascii"),
        }
        if self._sse:
            request["ServerSideEncryption"] = self._sse
        if self._storage_class:
            request["StorageClass"] = self._storage_class
        response = await self._call(
            "put_object",
            lambda: client.put_object(**request),
            failure=lambda exc: StorageWriteError(self.name, exc),
        )
        logger.debug("s3_object_written bucket=%s key=%s bytes=%s", self._bucket, key, len(data))
        return StoredObject(
            key=key,
            size_bytes=len(data),
            integrity_token=_strip_etag(response.get("ETag")),
            version_id=response.get("VersionId"),
        )

    async def read(self, key: str, *, version_id: str | None = None) -> bytes:
        client = self._get_client()
        request: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if version_id:
            request["VersionId"] = version_id

        def _get() -> bytes:
            response = client.get_object(**request)
            body = response["Body"]
            try:
                return body.read()
            finally:
                close = getattr(body, "close", None)
                if callable(close):
                    close()

        return await self._call(
            "get_object",
            _get,
            failure=lambda exc: StorageReadError(f"s3 read failed for {key}: {exc}"),
        )

    async def exists(self, key: str, *, version_id: str | None = None) -> bool:
        client = self._get_client()
        request: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if version_id:
            request["VersionId"] = version_id
        try:
            await self._call(
                "head_object",
                lambda: client.head_object(**request),
                failure=lambda exc: StorageReadError(f"s3 head failed for {key}: {exc}"),
            )
        except NotFoundError:
            return False
        return True

    async def delete(self, key: str, *, version_id: str | None = None) -> bool:
        # S3 deletes succeed for missing keys, so probe first to report absence.
        if not await self.exists(key, version_id=version_id):
            return False
        client = self._get_client()
        request: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if version_id:
            request["VersionId"] = version_id
        await self._call(
            "delete_object",
            lambda: client.delete_object(**request),
            failure=lambda exc: StorageError(f"s3 delete failed for {key}: {exc}"),
        )
        return True

    def expected_token(self, data: bytes) -> str | None:
        if self._sse in _MD5_ETAG_ENCRYPTION:
            return hashlib.md5(data, usedforsecurity=False).hexdigest()
        return None

    async def check_access(self) -> None:
        client = self._get_client()
        await self._call(
            "head_bucket",
            lambda: client.head_bucket(Bucket=self._bucket),
            failure=lambda exc: StorageError(f"s3 bucket {self._bucket} is not reachable: {exc}"),
        )
