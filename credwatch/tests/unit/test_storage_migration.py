from __future__ import annotations

import pytest

from credwatch.persistence.repos.documents import get_document, list_documents
from credwatch.services.storage.documents import DocumentMetadata, store_document
from credwatch.services.storage.local import LocalStorageBackend
from credwatch.services.storage.migration import migrate_documents
from credwatch.services.storage.s3 import S3StorageBackend
from credwatch.tests.utils.s3 import FailingWriteBackend, InMemoryS3Client


async def _store_many(session_factory, resolve, count: int) -> list[str]:
    ids = []
    async with session_factory() as session:
        for index in range(count):
            document = await store_document(
                session,
                f"%PDF-1.7 document {index}".encode(),
                DocumentMetadata(filename=f"doc-{index}.pdf", owner_id=f"emp-{index % 2}"),
                resolver=resolve,
            )
            ids.append(document.id)
    return ids


@pytest.mark.asyncio
async def test_batch_migration_moves_every_document(session_factory, tmp_path) -> None:
    client = InMemoryS3Client()
    local = LocalStorageBackend(tmp_path / "documents")
    s3 = S3StorageBackend(bucket_name="hr-docs", client=client, backoff_ms=1)
    resolve = lambda name, snapshot: s3 if name == "s3" else local  # noqa: E731
    await _store_many(session_factory, resolve, 5)

    result = await migrate_documents(
        target_backend="s3",
        session_factory=session_factory,
        batch_size=2,
        cleanup_source=True,
        resolver=resolve,
    )

    assert (result.total, result.migrated, result.failed, result.skipped) == (5, 5, 0, 0)
    async with session_factory() as check:
        documents = await list_documents(check)
    assert {document.storage_type for document in documents} == {"s3"}
    assert all(document.previous_storage_key is None for document in documents)
    assert len(client.objects) == 5
    assert not any(path.is_file() for path in (tmp_path / "documents").rglob("*"))

    rerun = await migrate_documents(target_backend="s3", session_factory=session_factory, resolver=resolve)
    assert rerun.total == 0


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(session_factory, tmp_path) -> None:
    client = InMemoryS3Client()
    local = LocalStorageBackend(tmp_path / "documents")
    s3 = S3StorageBackend(bucket_name="hr-docs", client=client, backoff_ms=1)
    resolve = lambda name, snapshot: s3 if name == "s3" else local  # noqa: E731
    ids = await _store_many(session_factory, resolve, 3)
    # Remove one source file so the dry run reports it as skipped.
    async with session_factory() as session:
        missing = await get_document(session, ids[0])
        await local.delete(missing.storage_key)

    result = await migrate_documents(
        target_backend="s3", session_factory=session_factory, dry_run=True, resolver=resolve
    )

    assert (result.total, result.migrated, result.skipped) == (3, 2, 1)
    assert client.objects == {}
    async with session_factory() as check:
        assert {document.storage_type for document in await list_documents(check)} == {"local"}


@pytest.mark.asyncio
async def test_failures_are_collected_per_document(session_factory, tmp_path) -> None:
    local = LocalStorageBackend(tmp_path / "documents")
    broken = FailingWriteBackend(S3StorageBackend(bucket_name="hr-docs", client=InMemoryS3Client(), backoff_ms=1))
    resolve = lambda name, snapshot: broken if name == "s3" else local  # noqa: E731
    await _store_many(session_factory, resolve, 2)

    result = await migrate_documents(target_backend="s3", session_factory=session_factory, resolver=resolve)

    assert result.failed == 2
    assert {item.code for item in result.errors} == {"storage_write_failed"}
    async with session_factory() as check:
        assert {document.storage_type for document in await list_documents(check)} == {"local"}
    assert result.as_dict()["failed"] == 2


@pytest.mark.asyncio
async def test_missing_source_is_skipped(session_factory, tmp_path) -> None:
    local = LocalStorageBackend(tmp_path / "documents")
    s3 = S3StorageBackend(bucket_name="hr-docs", client=InMemoryS3Client(), backoff_ms=1)
    resolve = lambda name, snapshot: s3 if name == "s3" else local  # noqa: E731
    ids = await _store_many(session_factory, resolve, 2)
    async with session_factory() as session:
        await local.delete((await get_document(session, ids[1])).storage_key)

    result = await migrate_documents(
        target_backend="s3", session_factory=session_factory, owner_id="emp-1", resolver=resolve
    )

    assert (result.total, result.migrated, result.skipped) == (1, 0, 1)


@pytest.mark.asyncio
async def test_retained_sources_are_only_removed_on_request(session_factory, tmp_path) -> None:
    local = LocalStorageBackend(tmp_path / "documents")
    s3 = S3StorageBackend(bucket_name="hr-docs", client=InMemoryS3Client(), backoff_ms=1)
    resolve = lambda name, snapshot: s3 if name == "s3" else local  # noqa: E731
    ids = await _store_many(session_factory, resolve, 2)
    await migrate_documents(target_backend="s3", session_factory=session_factory, resolver=resolve)

    blocked = await migrate_documents(target_backend="local", session_factory=session_factory, resolver=resolve)

    assert (blocked.migrated, blocked.failed) == (0, 2)
    assert {item.code for item in blocked.errors} == {"migration_cleanup_pending"}
    async with session_factory() as check:
        for document_id in ids:
            document = await get_document(check, document_id)
            assert document.storage_type == "s3"
            assert await local.exists(document.previous_storage_key) is True

    moved = await migrate_documents(
        target_backend="local", session_factory=session_factory, cleanup_source=True, resolver=resolve
    )

    assert (moved.migrated, moved.failed) == (2, 0)
    async with session_factory() as check:
        documents = await list_documents(check)
    assert {document.storage_type for document in documents} == {"local"}
    assert all(document.previous_storage_key is None for document in documents)
