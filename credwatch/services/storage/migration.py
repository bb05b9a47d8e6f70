from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credwatch.core.config import get_settings
from credwatch.core.errors import CredwatchError, NotFoundError
from credwatch.persistence.db import SessionLocal
from credwatch.persistence.repos.documents import get_document, list_document_ids
from credwatch.services.storage.config import get_storage_snapshot
from credwatch.services.storage.documents import cleanup_migration_source, migrate_document
from credwatch.services.storage.factory import BackendResolver, get_storage_backend


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationErrorItem:
    document_id: str
    error: str
    code: str | None = None


@dataclass
class MigrationResult:
    target_backend: str
    dry_run: bool
    total: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[MigrationErrorItem] = field(default_factory=list)
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _migrate_one(
    session: AsyncSession,
    document_id: str,
    *,
    target_backend: str,
    dry_run: bool,
    cleanup_source: bool,
    resolver: BackendResolver,
    result: MigrationResult,
) -> None:
    document = await get_document(session, document_id)
    if document is None or document.storage_type == target_backend:
        result.skipped += 1
        return
    if dry_run:
        # Dry runs only confirm the source bytes are still there.
        snapshot = await get_storage_snapshot(session)
        source = resolver(document.storage_type, snapshot)
        if await source.exists(document.storage_key):
            result.migrated += 1
        else:
            result.skipped += 1
            logger.warning("migration_source_missing document_id=%s key=%s", document_id, document.storage_key)
        return
    if cleanup_source and document.previous_storage_key:
        await cleanup_migration_source(session, document, resolver=resolver)
    try:
        migrated = await migrate_document(session, document, target_backend, resolver=resolver)
    except NotFoundError as exc:
        # Missing source bytes cannot be migrated; report and move on.
        result.skipped += 1
        logger.warning("migration_source_missing document_id=%s", document_id, exc_info=exc)
        return
    result.migrated += 1
    if cleanup_source:
        await cleanup_migration_source(session, migrated, resolver=resolver)


async def migrate_documents(
    *,
    target_backend: str,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    dry_run: bool = False,
    batch_size: int | None = None,
    cleanup_source: bool = False,
    owner_id: str | None = None,
    resolver: BackendResolver | None = None,
) -> MigrationResult:
    """Move every document not yet on target_backend, one session per document.

    Failures are collected per document; a failed document keeps its old pointer.
    """
    session_factory = session_factory or SessionLocal
    resolver = resolver or get_storage_backend
    size = max(1, int(batch_size or get_settings().migration_batch_size))
    result = MigrationResult(target_backend=target_backend, dry_run=dry_run)
    start = time.monotonic()

    async with session_factory() as session:
        document_ids = await list_document_ids(session, owner_id=owner_id, exclude_storage_type=target_backend)
    result.total = len(document_ids)
    logger.info(
        "document_migration_started target=%s total=%s dry_run=%s batch_size=%s",
        target_backend,
        result.total,
        dry_run,
        size,
    )

    for offset in range(0, len(document_ids), size):
        batch = document_ids[offset : offset + size]
        for document_id in batch:
            async with session_factory() as session:
                try:
                    await _migrate_one(
                        session,
                        document_id,
                        target_backend=target_backend,
                        dry_run=dry_run,
                        cleanup_source=cleanup_source,
                        resolver=resolver,
                        result=result,
                    )
                except CredwatchError as exc:
                    result.failed += 1
                    result.errors.append(MigrationErrorItem(document_id, str(exc), exc.code))
                    logger.error("document_migration_failed document_id=%s code=%s", document_id, exc.code, exc_info=exc)
        logger.info(
            "document_migration_progress processed=%s/%s migrated=%s failed=%s skipped=%s",
            min(offset + size, len(document_ids)),
            len(document_ids),
            result.migrated,
            result.failed,
            result.skipped,
        )

    result.duration_ms = (time.monotonic() - start) * 1000.0
    logger.info(
        "document_migration_finished target=%s migrated=%s failed=%s skipped=%s duration_ms=%.1f",
        target_backend,
        result.migrated,
        result.failed,
        result.skipped,
        result.duration_ms,
    )
    return result
