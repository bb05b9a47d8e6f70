from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.core.config import Settings, get_settings, parse_csv
from credwatch.core.errors import StorageConfigError
from credwatch.domain.models import StorageConfiguration
from credwatch.persistence.repos.storage_config import get_current_storage_configuration
from credwatch.services.audit import record_event
from credwatch.services.security.secrets import decrypt_secret, encrypt_secret, mask_secret


SUPPORTED_BACKENDS = frozenset({"local", "s3"})
_UPDATABLE_FIELDS = frozenset(
    {
        "backend",
        "region",
        "bucket_name",
        "endpoint_url",
        "access_key_id",
        "secret_access_key",
        "server_side_encryption",
        "storage_class",
        "local_root",
        "max_file_size_bytes",
        "allowed_extensions",
        "allowed_mime_types",
    }
)


@dataclass(frozen=True)
class StorageConfigSnapshot:
    """Immutable view of storage configuration taken once per operation."""

    backend: str
    local_root: str
    max_file_size_bytes: int
    allowed_extensions: frozenset[str]
    allowed_mime_types: frozenset[str]
    region: str | None = None
    bucket_name: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = field(default=None, repr=False)
    server_side_encryption: str | None = None
    storage_class: str | None = None
    call_timeout_ms: int = 30000
    revision: int = 0
    source: str = "settings"

    def redacted(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "local_root": self.local_root,
            "max_file_size_bytes": self.max_file_size_bytes,
            "allowed_extensions": sorted(self.allowed_extensions),
            "allowed_mime_types": sorted(self.allowed_mime_types),
            "region": self.region,
            "bucket_name": self.bucket_name,
            "endpoint_url": self.endpoint_url,
            "access_key_id": mask_secret(self.access_key_id),
            "server_side_encryption": self.server_side_encryption,
            "storage_class": self.storage_class,
            "revision": self.revision,
            "source": self.source,
        }


def _normalize_extensions(values: list[str] | tuple[str, ...] | frozenset[str]) -> frozenset[str]:
    return frozenset(value.strip().lower().lstrip(".") for value in values if value and value.strip())


def _normalize_mime_types(values: list[str] | tuple[str, ...] | frozenset[str]) -> frozenset[str]:
    return frozenset(value.strip().lower() for value in values if value and value.strip())


def snapshot_from_settings(settings: Settings | None = None) -> StorageConfigSnapshot:
    settings = settings or get_settings()
    return StorageConfigSnapshot(
        backend=settings.storage_backend.lower(),
        local_root=settings.storage_local_root,
        max_file_size_bytes=int(settings.storage_max_file_size_bytes),
        allowed_extensions=_normalize_extensions(parse_csv(settings.storage_allowed_extensions)),
        allowed_mime_types=_normalize_mime_types(parse_csv(settings.storage_allowed_mime_types)),
        region=settings.s3_region,
        bucket_name=settings.s3_bucket_name,
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        server_side_encryption=settings.s3_server_side_encryption or None,
        storage_class=settings.s3_storage_class or None,
        call_timeout_ms=int(settings.storage_call_timeout_ms),
        revision=0,
        source="settings",
    )


def snapshot_from_row(row: StorageConfiguration, settings: Settings | None = None) -> StorageConfigSnapshot:
    # Unset row fields fall back to settings so a partial admin row still yields a usable snapshot.
    base = snapshot_from_settings(settings)
    secret = decrypt_secret(row.secret_access_key_encrypted) if row.secret_access_key_encrypted else base.secret_access_key
    return StorageConfigSnapshot(
        backend=(row.backend or base.backend).lower(),
        local_root=row.local_root or base.local_root,
        max_file_size_bytes=int(row.max_file_size_bytes or base.max_file_size_bytes),
        allowed_extensions=(
            _normalize_extensions(row.allowed_extensions) if row.allowed_extensions else base.allowed_extensions
        ),
        allowed_mime_types=(
            _normalize_mime_types(row.allowed_mime_types) if row.allowed_mime_types else base.allowed_mime_types
        ),
        region=row.region or base.region,
        bucket_name=row.bucket_name or base.bucket_name,
        endpoint_url=row.endpoint_url or base.endpoint_url,
        access_key_id=row.access_key_id or base.access_key_id,
        secret_access_key=secret,
        server_side_encryption=row.server_side_encryption or base.server_side_encryption,
        storage_class=row.storage_class or base.storage_class,
        call_timeout_ms=base.call_timeout_ms,
        revision=int(row.revision or 0),
        source="database",
    )


async def get_storage_snapshot(session: AsyncSession) -> StorageConfigSnapshot:
    # Read on every operation; one row read means callers see old or new config, never a mix.
    row = await get_current_storage_configuration(session)
    if row is None:
        return snapshot_from_settings()
    return snapshot_from_row(row)


def _validate_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise StorageConfigError(f"unknown storage configuration fields: {', '.join(sorted(unknown))}")
    backend = changes.get("backend")
    if backend is not None and str(backend).lower() not in SUPPORTED_BACKENDS:
        raise StorageConfigError(f"unsupported storage backend {backend!r}")
    max_size = changes.get("max_file_size_bytes")
    if max_size is not None and int(max_size) <= 0:
        raise StorageConfigError("max_file_size_bytes must be positive")
    for key in ("allowed_extensions", "allowed_mime_types"):
        value = changes.get(key)
        if value is not None and not isinstance(value, (list, tuple)):
            raise StorageConfigError(f"{key} must be a list")


async def update_storage_configuration(
    session: AsyncSession,
    *,
    changes: dict[str, Any],
    actor_id: str | None = None,
) -> StorageConfigSnapshot:
    """Apply an administrative change set in one transaction and return the new snapshot."""
    _validate_changes(changes)
    row = await get_current_storage_configuration(session)
    if row is None:
        row = StorageConfiguration(revision=0)
        session.add(row)
    for key, value in changes.items():
        if key == "secret_access_key":
            row.secret_access_key_encrypted = encrypt_secret(value) if value else None
        elif key == "backend":
            row.backend = str(value).lower()
        elif key == "allowed_extensions":
            row.allowed_extensions = sorted(_normalize_extensions(value))
        elif key == "allowed_mime_types":
            row.allowed_mime_types = sorted(_normalize_mime_types(value))
        else:
            setattr(row, key, value)
    row.revision = int(row.revision or 0) + 1
    row.updated_by = actor_id

    snapshot = snapshot_from_row(row)
    if snapshot.backend == "s3" and not snapshot.bucket_name:
        await session.rollback()
        raise StorageConfigError("bucket_name is required for the s3 backend")

    await record_event(
        session=session,
        event_type="storage.configuration_updated",
        outcome="success",
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        resource_type="storage_configuration",
        metadata={"fields": sorted(changes), "revision": row.revision},
    )
    await session.commit()
    return snapshot
