from __future__ import annotations

from datetime import date, timedelta
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.domain.credentials import HELD_STATUSES
from credwatch.persistence.repos.credentials import count_credentials_by_status, list_tracked_credentials
from credwatch.services.expiration.engine import utc_today
from credwatch.services.notifications.base import NotificationSender


logger = logging.getLogger(__name__)


async def list_expiring_items(
    session: AsyncSession,
    *,
    within_days: int = 30,
    as_of: date | None = None,
) -> list[dict[str, Any]]:
    # Upcoming expirations only; lapsed credentials are reported by status counts.
    as_of = as_of or utc_today()
    horizon = as_of + timedelta(days=within_days)
    rows = await list_tracked_credentials(session, expiring_on_or_before=horizon)
    held = {status.value for status in HELD_STATUSES}
    items: list[dict[str, Any]] = []
    for row in rows:
        if row.expiration_date is None or row.expiration_date <= as_of or row.status in held:
            continue
        items.append(
            {
                "credential_id": row.id,
                "category": row.category,
                "identifier": row.identifier,
                "owner_type": row.owner_type,
                "owner_id": row.owner_id,
                "expiration_date": row.expiration_date.isoformat(),
                "days_remaining": (row.expiration_date - as_of).days,
            }
        )
    return items


async def build_compliance_summary(
    session: AsyncSession,
    *,
    as_of: date | None = None,
    window_days: int = 30,
) -> dict[str, Any]:
    as_of = as_of or utc_today()
    by_category = await count_credentials_by_status(session)
    totals: dict[str, int] = {}
    for statuses in by_category.values():
        for status, count in statuses.items():
            totals[status] = totals.get(status, 0) + count
    expiring = await list_expiring_items(session, within_days=window_days, as_of=as_of)
    return {
        "as_of": as_of.isoformat(),
        "window_days": window_days,
        "status_totals": totals,
        "by_category": by_category,
        "expiring": expiring,
    }


async def send_compliance_summary(
    session: AsyncSession,
    *,
    sender: NotificationSender,
    recipient: str,
    as_of: date | None = None,
    window_days: int = 30,
) -> dict[str, Any]:
    summary = await build_compliance_summary(session, as_of=as_of, window_days=window_days)
    await sender.send(recipient, "compliance_summary", summary)
    logger.info(
        "compliance_summary_sent recipient=%s expiring=%s", recipient, len(summary["expiring"])
    )
    return summary
