from __future__ import annotations

from pathlib import Path
from typing import Callable

from credwatch.core.config import get_settings
from credwatch.core.errors import StorageConfigError
from credwatch.services.storage.base import StorageBackend
from credwatch.services.storage.config import StorageConfigSnapshot
from credwatch.services.storage.local import LocalStorageBackend
from credwatch.services.storage.s3 import S3StorageBackend


BackendResolver = Callable[[str, StorageConfigSnapshot], StorageBackend]


def _build_local(snapshot: StorageConfigSnapshot) -> StorageBackend:
    return LocalStorageBackend(Path(snapshot.local_root))


def _build_s3(snapshot: StorageConfigSnapshot) -> StorageBackend:
    settings = get_settings()
    return S3StorageBackend(
        bucket_name=snapshot.bucket_name or "",
        region=snapshot.region,
        endpoint_url=snapshot.endpoint_url,
        access_key_id=snapshot.access_key_id,
        secret_access_key=snapshot.secret_access_key,
        server_side_encryption=snapshot.server_side_encryption,
        storage_class=snapshot.storage_class,
        call_timeout_ms=snapshot.call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


_BACKENDS: dict[str, Callable[[StorageConfigSnapshot], StorageBackend]] = {
    "local": _build_local,
    "s3": _build_s3,
}


def get_storage_backend(name: str, snapshot: StorageConfigSnapshot) -> StorageBackend:
    # Backends are built per operation from the snapshot so config changes apply on the next call.
    builder = _BACKENDS.get((name or "").lower())
    if builder is None:
        raise StorageConfigError(f"Unsupported storage backend: {name}")
    return builder(snapshot)
