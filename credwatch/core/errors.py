from __future__ import annotations


class CredwatchError(Exception):
    """Base error for credwatch."""

    code = "credwatch_error"


class ProviderConfigError(CredwatchError):
    """Missing or invalid provider configuration."""

    code = "provider_config_error"


class IntegrationUnavailableError(CredwatchError):
    """External integration is temporarily unavailable (circuit open)."""

    code = "integration_unavailable"


class DatabaseError(CredwatchError):
    """Database layer failure."""

    code = "database_error"


class ExpirationError(CredwatchError):
    """Expiration engine failure."""

    code = "expiration_error"


class InvalidDateRange(ExpirationError):
    """Expiration date precedes issue date."""

    code = "invalid_date_range"


class MissingConfig(ExpirationError):
    """No license type configuration resolves for a credential category."""

    code = "missing_config"

    def __init__(self, category: str) -> None:
        super().__init__(f"no license type configuration for category {category!r}")
        self.category = category


class InvalidStatusTransition(ExpirationError):
    """Requested status change is not allowed from the current status."""

    code = "invalid_status_transition"


class CredentialNotFoundError(ExpirationError):
    """Tracked credential does not exist."""

    code = "credential_not_found"


class NotificationDeliveryError(CredwatchError):
    """Notification provider rejected or failed to deliver a message."""

    code = "notification_delivery_failed"


class StorageError(CredwatchError):
    """Document storage failure."""

    code = "storage_error"


class StorageConfigError(StorageError):
    """Storage configuration is missing required fields or is invalid."""

    code = "storage_config_error"


class EmptyFileError(StorageError):
    """Uploaded content has zero bytes."""

    code = "empty_file"


class FileTooLarge(StorageError):
    """Uploaded content exceeds the configured maximum size."""

    code = "file_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"file of {size} bytes exceeds the {limit} byte limit")
        self.size = size
        self.limit = limit


class UnsupportedFileType(StorageError):
    """File extension or MIME type is not allowed."""

    code = "unsupported_file_type"


class StorageWriteError(StorageError):
    """Backend rejected a write."""

    code = "storage_write_failed"

    def __init__(self, backend: str, cause: BaseException | str) -> None:
        super().__init__(f"{backend} write failed: {cause}")
        self.backend = backend
        self.cause = cause


class StorageReadError(StorageError):
    """Backend read failed for a reason other than a missing object."""

    code = "storage_read_failed"


class NotFoundError(StorageError):
    """Storage key or document does not exist."""

    code = "document_not_found"


class IntegrityError(StorageError):
    """Stored bytes do not match the recorded checksum."""

    code = "integrity_mismatch"


class ConcurrentModificationError(StorageError):
    """Document metadata changed while an operation was in flight."""

    code = "concurrent_modification"


class StorageTimeoutError(StorageError, TimeoutError):
    """Remote storage call exceeded its time budget."""

    code = "storage_timeout"


class MetadataDeleteError(StorageError):
    """Bytes were deleted but the metadata row could not be removed."""

    code = "metadata_delete_failed"


class PendingCleanupError(StorageError):
    """A retained migration source must be cleaned up before the document moves again."""

    code = "migration_cleanup_pending"
