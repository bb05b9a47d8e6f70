from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Postgres gets JSONB; SQLite test databases fall back to plain JSON.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class TrackedCredential(Base):
    __tablename__ = "tracked_credentials"
    __table_args__ = (Index("ix_tracked_credentials_owner", "owner_type", "owner_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Category keys into license_type_configs for alert windows.
    category: Mapped[str] = mapped_column(String, index=True)
    owner_type: Mapped[str] = mapped_column(String)
    owner_id: Mapped[str] = mapped_column(String)
    # License number for licenses, certification name for certifications.
    identifier: Mapped[str] = mapped_column(String)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    issue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Credentials without an expiration date are never evaluated.
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_alert_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_alert_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    alerts_suppressed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LicenseTypeConfig(Base):
    __tablename__ = "license_type_configs"

    category: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str] = mapped_column(String)
    alert_days_before: Mapped[int] = mapped_column(Integer, nullable=False)
    escalation_days_before: Mapped[int] = mapped_column(Integer, nullable=False)
    # Days needed to complete a renewal; drives the renewal_due flag.
    lead_time_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_critical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ComplianceAlert(Base):
    __tablename__ = "compliance_alerts"

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("tracked_credentials.id", ondelete="CASCADE"), index=True
    )
    tier: Mapped[str] = mapped_column(String)
    days_remaining: Mapped[int] = mapped_column(Integer)
    recipient: Mapped[str | None] = mapped_column(String, nullable=True)
    # sent | failed
    status: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ComplianceDocument(Base):
    __tablename__ = "compliance_documents"
    __table_args__ = (Index("ix_compliance_documents_owner_current", "owner_id", "is_current"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    original_filename: Mapped[str] = mapped_column(String)
    mime_type: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    document_type: Mapped[str] = mapped_column(String, default="general")
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    credential_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tracked_credentials.id", ondelete="CASCADE"), nullable=True, index=True
    )
    storage_type: Mapped[str] = mapped_column(String, default="local", index=True)
    storage_key: Mapped[str] = mapped_column(String)
    # sha256 hex for local objects, ETag for S3 objects.
    integrity_token: Mapped[str | None] = mapped_column(String, nullable=True)
    # Backend-independent digest used to verify reads and migrations.
    checksum_sha256: Mapped[str] = mapped_column(String)
    version_id: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    superseded_by_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Bumped on every pointer change; migrations compare-and-swap on it.
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # Source object of the last migration, retained until cleanup.
    previous_storage_type: Mapped[str | None] = mapped_column(String, nullable=True)
    previous_storage_key: Mapped[str | None] = mapped_column(String, nullable=True)
    previous_version_id: Mapped[str | None] = mapped_column(String, nullable=True)
    migrated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    uploaded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StorageConfiguration(Base):
    __tablename__ = "storage_configurations"

    # Single-row table; operations read the row with the highest id.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backend: Mapped[str] = mapped_column(String, default="local")
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    bucket_name: Mapped[str | None] = mapped_column(String, nullable=True)
    endpoint_url: Mapped[str | None] = mapped_column(String, nullable=True)
    access_key_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Fernet token; plaintext secrets are never persisted.
    secret_access_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    server_side_encryption: Mapped[str | None] = mapped_column(String, nullable=True)
    storage_class: Mapped[str | None] = mapped_column(String, nullable=True)
    local_root: Mapped[str | None] = mapped_column(String, nullable=True)
    max_file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    allowed_extensions: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    allowed_mime_types: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stable event taxonomy, e.g. credential.status_changed or document.migrated.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
