from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.core.errors import (
    ConcurrentModificationError,
    CredwatchError,
    IntegrityError,
    MetadataDeleteError,
    PendingCleanupError,
    StorageError,
)
from credwatch.domain.models import ComplianceDocument
from credwatch.persistence.repos.documents import (
    clear_previous_location,
    mark_superseded,
    storage_usage_by_backend,
    swap_storage_pointer,
)
from credwatch.services.audit import record_event
from credwatch.services.storage.base import StorageBackend, StoredObject
from credwatch.services.storage.config import StorageConfigSnapshot, get_storage_snapshot
from credwatch.services.storage.factory import BackendResolver, get_storage_backend
from credwatch.services.storage.local import sha256_hex
from credwatch.services.storage.validation import (
    build_storage_key,
    guess_mime_type,
    read_content,
    validate_upload,
)
from credwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentMetadata:
    filename: str
    mime_type: str | None = None
    name: str | None = None
    document_type: str = "general"
    owner_id: str | None = None
    credential_id: str | None = None
    uploaded_by: str | None = None


@dataclass(frozen=True)
class StagedCopy:
    target_backend: str
    stored: StoredObject
    expected_revision: int


def _resolver(resolver: BackendResolver | None) -> BackendResolver:
    return resolver or get_storage_backend


async def _discard_object(backend: StorageBackend, stored: StoredObject, *, reason: str) -> None:
    # Compensation path; a failure here leaves an orphaned object, which is logged for cleanup.
    try:
        await backend.delete(stored.key, version_id=stored.version_id)
    except CredwatchError as exc:
        logger.error(
            "storage_orphaned_object backend=%s key=%s reason=%s", backend.name, stored.key, reason, exc_info=exc
        )
        increment_counter("storage_orphaned_objects_total")


async def _write_validated(
    session: AsyncSession,
    content: Any,
    metadata: DocumentMetadata,
    resolver: BackendResolver | None,
) -> tuple[StorageConfigSnapshot, StorageBackend, StoredObject, bytes, str]:
    snapshot = await get_storage_snapshot(session)
    mime_type = metadata.mime_type or guess_mime_type(metadata.filename)
    data = await read_content(content, limit=snapshot.max_file_size_bytes)
    validate_upload(data, filename=metadata.filename, mime_type=mime_type, snapshot=snapshot)
    backend = _resolver(resolver)(snapshot.backend, snapshot)
    key = build_storage_key(
        owner_id=metadata.owner_id,
        document_type=metadata.document_type,
        filename=metadata.filename,
    )
    stored = await backend.write(key, data, content_type=mime_type)
    return snapshot, backend, stored, data, mime_type


def _new_document(
    metadata: DocumentMetadata,
    *,
    backend: StorageBackend,
    stored: StoredObject,
    data: bytes,
    mime_type: str,
    version: int = 1,
) -> ComplianceDocument:
    return ComplianceDocument(
        name=metadata.name or metadata.filename,
        original_filename=metadata.filename,
        mime_type=mime_type,
        size_bytes=len(data),
        document_type=metadata.document_type,
        owner_id=metadata.owner_id,
        credential_id=metadata.credential_id,
        storage_type=backend.name,
        storage_key=stored.key,
        integrity_token=stored.integrity_token,
        checksum_sha256=sha256_hex(data),
        version_id=stored.version_id,
        version=version,
        is_current=True,
        revision=1,
        uploaded_by=metadata.uploaded_by,
    )


async def store_document(
    session: AsyncSession,
    content: Any,
    metadata: DocumentMetadata,
    *,
    resolver: BackendResolver | None = None,
) -> ComplianceDocument:
    """Validate, write bytes to the configured backend, then persist metadata.

    Bytes written before a failed metadata insert are deleted again.
    """
    _snapshot, backend, stored, data, mime_type = await _write_validated(session, content, metadata, resolver)
    document = _new_document(metadata, backend=backend, stored=stored, data=data, mime_type=mime_type)
    try:
        session.add(document)
        await session.flush()
        await record_event(
            session=session,
            event_type="document.stored",
            outcome="success",
            actor_type="user" if metadata.uploaded_by else "system",
            actor_id=metadata.uploaded_by,
            resource_type="compliance_document",
            resource_id=document.id,
            metadata={"backend": backend.name, "size_bytes": len(data), "document_type": metadata.document_type},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        await _discard_object(backend, stored, reason="metadata_insert_failed")
        raise
    increment_counter(f"documents_stored_total.{backend.name}")
    logger.info("document_stored document_id=%s backend=%s key=%s", document.id, backend.name, stored.key)
    return document


async def retrieve_document(
    session: AsyncSession,
    document: ComplianceDocument,
    *,
    verify: bool = False,
    resolver: BackendResolver | None = None,
) -> bytes:
    snapshot = await get_storage_snapshot(session)
    backend = _resolver(resolver)(document.storage_type, snapshot)
    data = await backend.read(document.storage_key, version_id=document.version_id)
    if verify and sha256_hex(data) != document.checksum_sha256:
        increment_counter("storage_integrity_failures_total")
        raise IntegrityError(f"checksum mismatch for document {document.id}")
    return data


async def stage_document_copy(
    document: ComplianceDocument,
    *,
    source: StorageBackend,
    target: StorageBackend,
) -> StagedCopy:
    """Copy bytes to the target and verify them; metadata is not touched."""
    expected_revision = int(document.revision)
    data = await source.read(document.storage_key, version_id=document.version_id)
    if sha256_hex(data) != document.checksum_sha256:
        raise IntegrityError(f"source bytes for document {document.id} do not match the recorded checksum")
    # A fresh key per copy keeps a losing concurrent migration from touching the winner's object.
    key = build_storage_key(
        owner_id=document.owner_id,
        document_type=document.document_type,
        filename=document.original_filename,
    )
    stored = await target.write(key, data, content_type=document.mime_type)
    expected_token = target.expected_token(data)
    if expected_token is not None:
        verified = stored.integrity_token == expected_token
    else:
        verified = sha256_hex(await target.read(stored.key, version_id=stored.version_id)) == document.checksum_sha256
    if not verified:
        await _discard_object(target, stored, reason="copy_verification_failed")
        raise IntegrityError(f"copy of document {document.id} on {target.name} failed verification")
    return StagedCopy(target_backend=target.name, stored=stored, expected_revision=expected_revision)


async def commit_document_copy(
    session: AsyncSession,
    document: ComplianceDocument,
    staged: StagedCopy,
    *,
    target: StorageBackend,
    actor_id: str | None = None,
) -> ComplianceDocument:
    document_id = document.id
    source_type = document.storage_type
    source_key = document.storage_key
    try:
        swapped = await swap_storage_pointer(
            session,
            document_id,
            expected_revision=staged.expected_revision,
            storage_type=staged.target_backend,
            storage_key=staged.stored.key,
            integrity_token=staged.stored.integrity_token,
            version_id=staged.stored.version_id,
            previous_storage_type=source_type,
            previous_storage_key=source_key,
            previous_version_id=document.version_id,
        )
        if not swapped:
            await session.rollback()
            await _discard_object(target, staged.stored, reason="lost_migration_race")
            increment_counter("storage_migration_conflicts_total")
            raise ConcurrentModificationError(f"document {document_id} changed during migration")
        await record_event(
            session=session,
            event_type="document.migrated",
            outcome="success",
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            resource_type="compliance_document",
            resource_id=document_id,
            metadata={"from": source_type, "to": staged.target_backend},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        await _discard_object(target, staged.stored, reason="pointer_swap_failed")
        raise
    await session.refresh(document)
    logger.info(
        "document_migrated document_id=%s from=%s to=%s key=%s",
        document_id,
        source_type,
        staged.target_backend,
        staged.stored.key,
    )
    return document


async def migrate_document(
    session: AsyncSession,
    document: ComplianceDocument,
    target_backend: str,
    *,
    resolver: BackendResolver | None = None,
    actor_id: str | None = None,
) -> ComplianceDocument:
    """Copy-then-switch migration. The source object is retained until cleanup."""
    if document.storage_type == target_backend:
        return document
    if document.previous_storage_key:
        # Only one retained source is tracked per document.
        raise PendingCleanupError(
            f"document {document.id} still retains {document.previous_storage_type}:{document.previous_storage_key}; "
            "run cleanup_migration_source first"
        )
    snapshot = await get_storage_snapshot(session)
    resolve = _resolver(resolver)
    source = resolve(document.storage_type, snapshot)
    target = resolve(target_backend, snapshot)
    staged = await stage_document_copy(document, source=source, target=target)
    return await commit_document_copy(session, document, staged, target=target, actor_id=actor_id)


async def cleanup_migration_source(
    session: AsyncSession,
    document: ComplianceDocument,
    *,
    resolver: BackendResolver | None = None,
) -> bool:
    if not document.previous_storage_key or not document.previous_storage_type:
        return False
    document_id = document.id
    snapshot = await get_storage_snapshot(session)
    backend = _resolver(resolver)(document.previous_storage_type, snapshot)
    removed = await backend.delete(document.previous_storage_key, version_id=document.previous_version_id)
    if not removed:
        logger.warning(
            "migration_source_already_absent document_id=%s key=%s", document_id, document.previous_storage_key
        )
    cleared = await clear_previous_location(session, document_id, expected_revision=int(document.revision))
    if not cleared:
        await session.rollback()
        raise ConcurrentModificationError(f"document {document_id} changed during source cleanup")
    await session.commit()
    await session.refresh(document)
    return True


async def replace_document(
    session: AsyncSession,
    document: ComplianceDocument,
    content: Any,
    metadata: DocumentMetadata,
    *,
    resolver: BackendResolver | None = None,
) -> ComplianceDocument:
    """Store a new version and retire the old one; the old bytes stay for audit history."""
    document_id = document.id
    expected_revision = int(document.revision)
    _snapshot, backend, stored, data, mime_type = await _write_validated(session, content, metadata, resolver)
    replacement = _new_document(
        metadata, backend=backend, stored=stored, data=data, mime_type=mime_type, version=int(document.version) + 1
    )
    try:
        session.add(replacement)
        await session.flush()
        retired = await mark_superseded(
            session, document_id, expected_revision=expected_revision, superseded_by_id=replacement.id
        )
        if not retired:
            await session.rollback()
            await _discard_object(backend, stored, reason="lost_replace_race")
            raise ConcurrentModificationError(f"document {document_id} changed during replacement")
        await record_event(
            session=session,
            event_type="document.replaced",
            outcome="success",
            actor_type="user" if metadata.uploaded_by else "system",
            actor_id=metadata.uploaded_by,
            resource_type="compliance_document",
            resource_id=replacement.id,
            metadata={"previous_document_id": document_id, "version": replacement.version},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        await _discard_object(backend, stored, reason="metadata_insert_failed")
        raise
    await session.refresh(document)
    return replacement


async def delete_document(
    session: AsyncSession,
    document: ComplianceDocument,
    *,
    resolver: BackendResolver | None = None,
) -> None:
    """Delete bytes first, then metadata, so metadata never points at bytes that were meant to be gone."""
    snapshot = await get_storage_snapshot(session)
    resolve = _resolver(resolver)
    backend = resolve(document.storage_type, snapshot)
    removed = await backend.delete(document.storage_key, version_id=document.version_id)
    if not removed:
        logger.warning("document_bytes_already_absent document_id=%s key=%s", document.id, document.storage_key)
    if document.previous_storage_key and document.previous_storage_type:
        previous = resolve(document.previous_storage_type, snapshot)
        try:
            await previous.delete(document.previous_storage_key, version_id=document.previous_version_id)
        except StorageError as exc:
            logger.error(
                "storage_orphaned_object backend=%s key=%s reason=retained_source_delete_failed",
                previous.name,
                document.previous_storage_key,
                exc_info=exc,
            )
    document_id = document.id
    storage_key = document.storage_key
    try:
        await session.delete(document)
        await record_event(
            session=session,
            event_type="document.deleted",
            outcome="success",
            resource_type="compliance_document",
            resource_id=document_id,
            metadata={"backend": backend.name},
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("document_metadata_orphaned document_id=%s key=%s", document_id, storage_key, exc_info=exc)
        increment_counter("storage_orphaned_metadata_total")
        raise MetadataDeleteError(f"bytes for document {document_id} were deleted but metadata remains") from exc


async def document_storage_stats(session: AsyncSession) -> dict[str, Any]:
    usage = await storage_usage_by_backend(session)
    snapshot = await get_storage_snapshot(session)
    return {
        "active_backend": snapshot.backend,
        "config_revision": snapshot.revision,
        "backends": usage,
        "total_documents": sum(item["documents"] for item in usage.values()),
        "total_bytes": sum(item["bytes"] for item in usage.values()),
    }


async def check_backend_access(
    session: AsyncSession,
    *,
    backend_name: str | None = None,
    resolver: BackendResolver | None = None,
) -> dict[str, Any]:
    snapshot = await get_storage_snapshot(session)
    name = backend_name or snapshot.backend
    try:
        await _resolver(resolver)(name, snapshot).check_access()
    except CredwatchError as exc:
        return {"backend": name, "ok": False, "error": str(exc)}
    return {"backend": name, "ok": True, "error": None}
