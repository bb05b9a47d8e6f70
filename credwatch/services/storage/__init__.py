from __future__ import annotations

from credwatch.services.storage.base import StorageBackend, StoredObject
from credwatch.services.storage.config import (
    StorageConfigSnapshot,
    get_storage_snapshot,
    update_storage_configuration,
)
from credwatch.services.storage.documents import (
    DocumentMetadata,
    check_backend_access,
    cleanup_migration_source,
    commit_document_copy,
    delete_document,
    document_storage_stats,
    migrate_document,
    replace_document,
    retrieve_document,
    stage_document_copy,
    store_document,
)
from credwatch.services.storage.factory import get_storage_backend
from credwatch.services.storage.local import LocalStorageBackend
from credwatch.services.storage.migration import MigrationResult, migrate_documents
from credwatch.services.storage.s3 import S3StorageBackend


__all__ = [
    "DocumentMetadata",
    "LocalStorageBackend",
    "MigrationResult",
    "S3StorageBackend",
    "StorageBackend",
    "StorageConfigSnapshot",
    "StoredObject",
    "check_backend_access",
    "cleanup_migration_source",
    "commit_document_copy",
    "delete_document",
    "document_storage_stats",
    "get_storage_backend",
    "get_storage_snapshot",
    "migrate_document",
    "migrate_documents",
    "replace_document",
    "retrieve_document",
    "stage_document_copy",
    "store_document",
    "update_storage_configuration",
]
