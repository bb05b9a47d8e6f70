from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.domain.models import ComplianceDocument


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_document(session: AsyncSession, document_id: str) -> ComplianceDocument | None:
    return await session.get(ComplianceDocument, document_id)


async def list_documents(
    session: AsyncSession,
    *,
    owner_id: str | None = None,
    credential_id: str | None = None,
    storage_type: str | None = None,
    current_only: bool = True,
) -> list[ComplianceDocument]:
    stmt = select(ComplianceDocument)
    if owner_id is not None:
        stmt = stmt.where(ComplianceDocument.owner_id == owner_id)
    if credential_id is not None:
        stmt = stmt.where(ComplianceDocument.credential_id == credential_id)
    if storage_type is not None:
        stmt = stmt.where(ComplianceDocument.storage_type == storage_type)
    if current_only:
        stmt = stmt.where(ComplianceDocument.is_current.is_(True))
    result = await session.execute(stmt.order_by(ComplianceDocument.created_at, ComplianceDocument.id))
    return list(result.scalars().all())


async def list_document_ids(
    session: AsyncSession,
    *,
    owner_id: str | None = None,
    exclude_storage_type: str | None = None,
) -> list[str]:
    stmt = select(ComplianceDocument.id)
    if owner_id is not None:
        stmt = stmt.where(ComplianceDocument.owner_id == owner_id)
    if exclude_storage_type is not None:
        stmt = stmt.where(ComplianceDocument.storage_type != exclude_storage_type)
    result = await session.execute(stmt.order_by(ComplianceDocument.created_at, ComplianceDocument.id))
    return list(result.scalars().all())


async def count_documents(session: AsyncSession, *, owner_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(ComplianceDocument)
    if owner_id is not None:
        stmt = stmt.where(ComplianceDocument.owner_id == owner_id)
    return int(await session.scalar(stmt) or 0)


async def swap_storage_pointer(
    session: AsyncSession,
    document_id: str,
    *,
    expected_revision: int,
    storage_type: str,
    storage_key: str,
    integrity_token: str | None,
    version_id: str | None,
    previous_storage_type: str,
    previous_storage_key: str,
    previous_version_id: str | None,
) -> bool:
    # Compare-and-swap on revision; False means another writer moved the pointer first.
    now = _utc_now()
    result = await session.execute(
        update(ComplianceDocument)
        .where(ComplianceDocument.id == document_id, ComplianceDocument.revision == expected_revision)
        .values(
            storage_type=storage_type,
            storage_key=storage_key,
            integrity_token=integrity_token,
            version_id=version_id,
            previous_storage_type=previous_storage_type,
            previous_storage_key=previous_storage_key,
            previous_version_id=previous_version_id,
            revision=expected_revision + 1,
            migrated_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def clear_previous_location(session: AsyncSession, document_id: str, *, expected_revision: int) -> bool:
    result = await session.execute(
        update(ComplianceDocument)
        .where(ComplianceDocument.id == document_id, ComplianceDocument.revision == expected_revision)
        .values(
            previous_storage_type=None,
            previous_storage_key=None,
            previous_version_id=None,
            revision=expected_revision + 1,
            updated_at=_utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_superseded(
    session: AsyncSession,
    document_id: str,
    *,
    expected_revision: int,
    superseded_by_id: str,
) -> bool:
    result = await session.execute(
        update(ComplianceDocument)
        .where(
            ComplianceDocument.id == document_id,
            ComplianceDocument.revision == expected_revision,
            ComplianceDocument.is_current.is_(True),
        )
        .values(
            is_current=False,
            superseded_by_id=superseded_by_id,
            revision=expected_revision + 1,
            updated_at=_utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def storage_usage_by_backend(session: AsyncSession) -> dict[str, dict[str, int]]:
    rows = (
        await session.execute(
            select(
                ComplianceDocument.storage_type,
                func.count(),
                func.coalesce(func.sum(ComplianceDocument.size_bytes), 0),
            )
            .where(ComplianceDocument.is_current.is_(True))
            .group_by(ComplianceDocument.storage_type)
        )
    ).all()
    return {storage_type: {"documents": int(count), "bytes": int(size)} for storage_type, count, size in rows}
