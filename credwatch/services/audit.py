from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.domain.models import AuditEvent


logger = logging.getLogger(__name__)

# Storage credentials, provider tokens, document bytes and employee identifiers never reach audit rows.
_SENSITIVE_KEY = re.compile(
    r"secret|token|password|authorization|access_key|content|ssn|date_of_birth",
    re.IGNORECASE,
)
REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _SENSITIVE_KEY.search(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession,
    event_type: str,
    outcome: str,
    actor_type: str = "system",
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Add an audit row to the caller's transaction.

    With ``commit=False`` the row lands or rolls back together with the caller's change.
    Write failures are logged and swallowed unless ``best_effort`` is False.
    """
    session.add(
        AuditEvent(
            occurred_at=occurred_at or datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata_json=sanitize_metadata(metadata or {}),
            error_code=error_code,
        )
    )
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        if not best_effort:
            raise
        logger.warning("audit_event_write_failed event_type=%s resource_id=%s", event_type, resource_id, exc_info=exc)
