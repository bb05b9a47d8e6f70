"""init credential tracking and document storage

Revision ID: 0001_init
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "license_type_configs",
        sa.Column("category", sa.String(), primary_key=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("alert_days_before", sa.Integer(), nullable=False),
        sa.Column("escalation_days_before", sa.Integer(), nullable=False),
        sa.Column("lead_time_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Escalation fires inside the warning window, never before it.
        sa.CheckConstraint("escalation_days_before <= alert_days_before", name="ck_license_type_windows"),
    )

    op.create_table(
        "tracked_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("owner_type", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("identifier", sa.String(), nullable=False),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("issue_date", sa.Date(), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_alert_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_alert_tier", sa.String(), nullable=True),
        sa.Column("alerts_suppressed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "expiration_date IS NULL OR issue_date IS NULL OR expiration_date >= issue_date",
            name="ck_tracked_credentials_date_range",
        ),
    )
    op.create_index("ix_tracked_credentials_category", "tracked_credentials", ["category"])
    op.create_index("ix_tracked_credentials_expiration_date", "tracked_credentials", ["expiration_date"])
    op.create_index("ix_tracked_credentials_owner", "tracked_credentials", ["owner_type", "owner_id"])

    op.create_table(
        "compliance_alerts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "credential_id",
            sa.String(),
            sa.ForeignKey("tracked_credentials.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("days_remaining", sa.Integer(), nullable=False),
        sa.Column("recipient", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_compliance_alerts_credential_id", "compliance_alerts", ["credential_id"])

    op.create_table(
        "compliance_documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("original_filename", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("document_type", sa.String(), nullable=False, server_default="general"),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column(
            "credential_id",
            sa.String(),
            sa.ForeignKey("tracked_credentials.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("storage_type", sa.String(), nullable=False, server_default="local"),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("integrity_token", sa.String(), nullable=True),
        sa.Column("checksum_sha256", sa.String(), nullable=False),
        sa.Column("version_id", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("superseded_by_id", sa.String(), nullable=True),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("previous_storage_type", sa.String(), nullable=True),
        sa.Column("previous_storage_key", sa.String(), nullable=True),
        sa.Column("previous_version_id", sa.String(), nullable=True),
        sa.Column("migrated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uploaded_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_compliance_documents_credential_id", "compliance_documents", ["credential_id"])
    op.create_index("ix_compliance_documents_storage_type", "compliance_documents", ["storage_type"])
    op.create_index(
        "ix_compliance_documents_owner_current", "compliance_documents", ["owner_id", "is_current"]
    )

    op.create_table(
        "storage_configurations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("backend", sa.String(), nullable=False, server_default="local"),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("bucket_name", sa.String(), nullable=True),
        sa.Column("endpoint_url", sa.String(), nullable=True),
        sa.Column("access_key_id", sa.String(), nullable=True),
        sa.Column("secret_access_key_encrypted", sa.Text(), nullable=True),
        sa.Column("server_side_encryption", sa.String(), nullable=True),
        sa.Column("storage_class", sa.String(), nullable=True),
        sa.Column("local_root", sa.String(), nullable=True),
        sa.Column("max_file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("allowed_extensions", postgresql.JSONB(), nullable=True),
        sa.Column("allowed_mime_types", postgresql.JSONB(), nullable=True),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("storage_configurations")
    op.drop_index("ix_compliance_documents_owner_current", table_name="compliance_documents")
    op.drop_index("ix_compliance_documents_storage_type", table_name="compliance_documents")
    op.drop_index("ix_compliance_documents_credential_id", table_name="compliance_documents")
    op.drop_table("compliance_documents")
    op.drop_index("ix_compliance_alerts_credential_id", table_name="compliance_alerts")
    op.drop_table("compliance_alerts")
    op.drop_index("ix_tracked_credentials_owner", table_name="tracked_credentials")
    op.drop_index("ix_tracked_credentials_expiration_date", table_name="tracked_credentials")
    op.drop_index("ix_tracked_credentials_category", table_name="tracked_credentials")
    op.drop_table("tracked_credentials")
    op.drop_table("license_type_configs")
