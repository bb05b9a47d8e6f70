from __future__ import annotations

import asyncio
import io

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.core.config import get_settings
from credwatch.core.errors import (
    ConcurrentModificationError,
    EmptyFileError,
    FileTooLarge,
    IntegrityError,
    MetadataDeleteError,
    NotFoundError,
    PendingCleanupError,
    StorageWriteError,
    UnsupportedFileType,
)
from credwatch.domain.models import ComplianceDocument
from credwatch.persistence.repos.documents import count_documents, get_document
from credwatch.services.storage.documents import (
    DocumentMetadata,
    check_backend_access,
    cleanup_migration_source,
    delete_document,
    document_storage_stats,
    migrate_document,
    replace_document,
    retrieve_document,
    store_document,
)
from credwatch.services.storage.local import LocalStorageBackend
from credwatch.services.storage.s3 import S3StorageBackend
from credwatch.tests.utils.s3 import FailingWriteBackend, GatedBackend, InMemoryS3Client


PDF = b"%PDF-1.7\n" + b"license scan " * 64


def _resolver(tmp_path, s3_backend):
    local = LocalStorageBackend(tmp_path / "documents")

    def resolve(name, snapshot):
        return s3_backend if name == "s3" else local

    return resolve, local


def _metadata(**overrides) -> DocumentMetadata:
    values = {"filename": "license.pdf", "owner_id": "emp-1", "document_type": "state_license"}
    values.update(overrides)
    return DocumentMetadata(**values)


@pytest.mark.asyncio
async def test_validation_rejects_empty_oversized_and_unsupported(session) -> None:
    with pytest.raises(EmptyFileError):
        await store_document(session, b"", _metadata())
    with pytest.raises(FileTooLarge) as excinfo:
        await store_document(session, b"x" * (11 * 1024 * 1024), _metadata())
    assert excinfo.value.limit == 10 * 1024 * 1024
    with pytest.raises(UnsupportedFileType):
        await store_document(session, b"MZ", _metadata(filename="setup.exe"))
    with pytest.raises(UnsupportedFileType):
        await store_document(session, b"hello", _metadata(filename="notes.pdf", mime_type="text/html"))
    assert await count_documents(session) == 0


@pytest.mark.asyncio
async def test_oversized_stream_is_not_read_whole(session) -> None:
    stream = io.BytesIO(b"x" * (10 * 1024 * 1024 + 5))
    with pytest.raises(FileTooLarge):
        await store_document(session, stream, _metadata())
    assert stream.tell() == 10 * 1024 * 1024 + 1


@pytest.mark.asyncio
async def test_store_and_retrieve_on_local(session, tmp_path) -> None:
    document = await store_document(session, PDF, _metadata(uploaded_by="admin-1"))

    assert document.storage_type == "local"
    assert document.storage_key.startswith("documents/emp-1/state_license/")
    assert document.storage_key.endswith("-license.pdf")
    assert document.mime_type == "application/pdf"
    assert (tmp_path / "documents" / document.storage_key).read_bytes() == PDF
    assert await retrieve_document(session, document, verify=True) == PDF


@pytest.mark.asyncio
async def test_store_and_retrieve_on_s3(session, tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("STORAGE_BACKEND", "s3")
    get_settings.cache_clear()
    client = InMemoryS3Client()
    resolve, _local = _resolver(tmp_path, S3StorageBackend(bucket_name="hr-docs", client=client, backoff_ms=1))

    document = await store_document(session, PDF, _metadata(), resolver=resolve)

    assert document.storage_type == "s3"
    assert document.version_id is not None
    assert ("hr-docs", document.storage_key) in client.objects
    assert await retrieve_document(session, document, verify=True, resolver=resolve) == PDF


@pytest.mark.asyncio
async def test_retrieve_detects_tampered_bytes(session, tmp_path) -> None:
    document = await store_document(session, PDF, _metadata())
    (tmp_path / "documents" / document.storage_key).write_bytes(b"tampered")

    with pytest.raises(IntegrityError):
        await retrieve_document(session, document, verify=True)


@pytest.mark.asyncio
async def test_failed_write_leaves_no_metadata(session, tmp_path) -> None:
    local = LocalStorageBackend(tmp_path / "documents")
    with pytest.raises(StorageWriteError):
        await store_document(session, PDF, _metadata(), resolver=lambda name, snapshot: FailingWriteBackend(local))
    assert await count_documents(session) == 0


@pytest.mark.asyncio
async def test_migrate_local_to_s3_and_back(session, tmp_path) -> None:
    client = InMemoryS3Client()
    resolve, local = _resolver(tmp_path, S3StorageBackend(bucket_name="hr-docs", client=client, backoff_ms=1))
    document = await store_document(session, PDF, _metadata(), resolver=resolve)
    original_key = document.storage_key

    moved = await migrate_document(session, document, "s3", resolver=resolve)

    assert moved.storage_type == "s3"
    assert moved.revision == 2
    assert moved.previous_storage_key == original_key
    assert moved.migrated_at is not None
    # The source copy is retained until cleanup.
    assert await local.exists(original_key) is True
    assert await retrieve_document(session, moved, verify=True, resolver=resolve) == PDF

    # A retained source blocks another move until the caller cleans it up.
    with pytest.raises(PendingCleanupError):
        await migrate_document(session, moved, "local", resolver=resolve)
    assert await local.exists(original_key) is True
    assert (await get_document(session, moved.id)).storage_type == "s3"

    assert await cleanup_migration_source(session, moved, resolver=resolve) is True
    assert await local.exists(original_key) is False
    back = await migrate_document(session, moved, "local", resolver=resolve)

    assert back.storage_type == "local"
    assert back.previous_storage_type == "s3"
    assert await retrieve_document(session, back, verify=True, resolver=resolve) == PDF


@pytest.mark.asyncio
async def test_migrate_to_current_backend_is_noop(session) -> None:
    document = await store_document(session, PDF, _metadata())
    same = await migrate_document(session, document, "local")
    assert same.revision == 1
    assert same.previous_storage_key is None


@pytest.mark.asyncio
async def test_failed_target_write_keeps_source_pointer(session, tmp_path) -> None:
    s3 = S3StorageBackend(bucket_name="hr-docs", client=InMemoryS3Client(), backoff_ms=1)
    resolve, _local = _resolver(tmp_path, FailingWriteBackend(s3))
    document = await store_document(session, PDF, _metadata(), resolver=resolve)

    with pytest.raises(StorageWriteError):
        await migrate_document(session, document, "s3", resolver=resolve)

    await session.refresh(document)
    assert document.storage_type == "local"
    assert document.revision == 1
    assert await retrieve_document(session, document, verify=True, resolver=resolve) == PDF


@pytest.mark.asyncio
async def test_concurrent_migrations_have_one_winner(session_factory, tmp_path) -> None:
    client = InMemoryS3Client()
    gated = GatedBackend(S3StorageBackend(bucket_name="hr-docs", client=client, backoff_ms=1), parties=2)
    resolve, _local = _resolver(tmp_path, gated)
    async with session_factory() as setup:
        document_id = (await store_document(setup, PDF, _metadata(), resolver=resolve)).id

    async def _migrate():
        async with session_factory() as worker:
            document = await get_document(worker, document_id)
            return await migrate_document(worker, document, "s3", resolver=resolve)

    results = await asyncio.gather(_migrate(), _migrate(), return_exceptions=True)

    winners = [item for item in results if isinstance(item, ComplianceDocument)]
    losers = [item for item in results if isinstance(item, ConcurrentModificationError)]
    assert len(winners) == 1
    assert len(losers) == 1
    async with session_factory() as check:
        final = await get_document(check, document_id)
    assert final.revision == 2
    # The loser removed its own staged copy; only the winner's object remains.
    assert [key for _bucket, key in client.objects] == [final.storage_key]


@pytest.mark.asyncio
async def test_cleanup_removes_retained_source(session, tmp_path) -> None:
    resolve, local = _resolver(tmp_path, S3StorageBackend(bucket_name="hr-docs", client=InMemoryS3Client(), backoff_ms=1))
    document = await store_document(session, PDF, _metadata(), resolver=resolve)
    source_key = document.storage_key
    moved = await migrate_document(session, document, "s3", resolver=resolve)

    assert await cleanup_migration_source(session, moved, resolver=resolve) is True

    assert await local.exists(source_key) is False
    assert moved.previous_storage_key is None
    assert await cleanup_migration_source(session, moved, resolver=resolve) is False


@pytest.mark.asyncio
async def test_delete_removes_bytes_then_metadata(session, tmp_path) -> None:
    document = await store_document(session, PDF, _metadata())
    document_id = document.id
    path = tmp_path / "documents" / document.storage_key

    await delete_document(session, document)

    assert not path.exists()
    assert await get_document(session, document_id) is None
    with pytest.raises(NotFoundError):
        await LocalStorageBackend(tmp_path / "documents").read(document.storage_key)


@pytest.mark.asyncio
async def test_delete_reports_metadata_left_behind(session, tmp_path, monkeypatch) -> None:
    document = await store_document(session, PDF, _metadata())
    document_id = document.id
    path = tmp_path / "documents" / document.storage_key

    async def _broken_commit(self):
        raise OperationalError("DELETE", {}, Exception("database is locked"))

    with monkeypatch.context() as patch:
        patch.setattr(AsyncSession, "commit", _broken_commit)
        with pytest.raises(MetadataDeleteError):
            await delete_document(session, document)

    # Bytes go first, so the failure leaves metadata without bytes rather than the reverse.
    assert not path.exists()
    assert await get_document(session, document_id) is not None


@pytest.mark.asyncio
async def test_replace_supersedes_previous_version(session) -> None:
    first = await store_document(session, PDF, _metadata())
    second = await replace_document(session, first, b"%PDF-1.7 renewed", _metadata())

    assert second.version == 2
    assert second.is_current is True
    assert first.is_current is False
    assert first.superseded_by_id == second.id

    with pytest.raises(ConcurrentModificationError):
        await replace_document(session, first, b"%PDF-1.7 stale", _metadata())


@pytest.mark.asyncio
async def test_storage_stats_and_access_check(session, tmp_path) -> None:
    await store_document(session, PDF, _metadata())
    await store_document(session, PDF, _metadata(filename="card.png"))

    stats = await document_storage_stats(session)

    assert stats["active_backend"] == "local"
    assert stats["backends"]["local"] == {"documents": 2, "bytes": 2 * len(PDF)}
    assert stats["total_documents"] == 2
    assert (await check_backend_access(session))["ok"] is True
    unreachable = await check_backend_access(session, backend_name="s3")
    assert unreachable["ok"] is False
