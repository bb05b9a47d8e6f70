from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StoredObject:
    key: str
    size_bytes: int
    # sha256 hex for local objects, bare ETag for S3 objects.
    integrity_token: str | None
    version_id: str | None = None


class StorageBackend(Protocol):
    name: str

    async def write(self, key: str, data: bytes, *, content_type: str) -> StoredObject:
        ...

    async def read(self, key: str, *, version_id: str | None = None) -> bytes:
        ...

    async def delete(self, key: str, *, version_id: str | None = None) -> bool:
        """Delete an object; False when it was already absent."""
        ...

    async def exists(self, key: str, *, version_id: str | None = None) -> bool:
        ...

    def expected_token(self, data: bytes) -> str | None:
        """Token the backend will report for data, or None when it cannot be predicted."""
        ...

    async def check_access(self) -> None:
        ...
