from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from pathlib import Path
import time
from uuid import uuid4

from credwatch.core.errors import NotFoundError, StorageError, StorageReadError, StorageWriteError
from credwatch.services.storage.base import StoredObject
from credwatch.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalStorageBackend:
    name = "local"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        # Keys are relative; anything resolving outside the root is rejected.
        path = (self._root / key).resolve()
        if path == self._root or self._root not in path.parents:
            raise StorageError(f"storage key escapes the storage root: {key!r}")
        return path

    def _write_sync(self, path: Path, data: bytes) -> None:
        # Write to a sibling temp file and rename so readers never see partial bytes.
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            with tmp_path.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def write(self, key: str, data: bytes, *, content_type: str) -> StoredObject:
        path = self._path_for(key)
        start = time.monotonic()
        try:
            await asyncio.to_thread(self._write_sync, path, data)
        except OSError as exc:
            record_external_call(integration="storage.local", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise StorageWriteError(self.name, exc) from exc
        record_external_call(integration="storage.local", latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        logger.debug("local_object_written key=%s bytes=%s content_type=%s", key, len(data), content_type)
        return StoredObject(key=key, size_bytes=len(data), integrity_token=sha256_hex(data))

    async def read(self, key: str, *, version_id: str | None = None) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"local object not found: {key}") from exc
        except OSError as exc:
            raise StorageReadError(f"local read failed for {key}: {exc}") from exc

    def _delete_sync(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    async def delete(self, key: str, *, version_id: str | None = None) -> bool:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(self._delete_sync, path)
        except OSError as exc:
            raise StorageError(f"local delete failed for {key}: {exc}") from exc

    async def exists(self, key: str, *, version_id: str | None = None) -> bool:
        return await asyncio.to_thread(self._path_for(key).is_file)

    def expected_token(self, data: bytes) -> str | None:
        return sha256_hex(data)

    def _check_access_sync(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        probe = self._root / f".probe-{uuid4().hex}"
        probe.write_bytes(b"ok")
        probe.unlink()

    async def check_access(self) -> None:
        try:
            await asyncio.to_thread(self._check_access_sync)
        except OSError as exc:
            raise StorageError(f"local storage root {self._root} is not writable: {exc}") from exc
