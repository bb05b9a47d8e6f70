from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.domain.models import StorageConfiguration


async def get_current_storage_configuration(session: AsyncSession) -> StorageConfiguration | None:
    # Latest row wins; older rows are history from before single-row updates.
    result = await session.execute(
        select(StorageConfiguration).order_by(StorageConfiguration.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()
