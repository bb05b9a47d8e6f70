from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credwatch.core.errors import CredentialNotFoundError, ExpirationError
from credwatch.domain.credentials import (
    CredentialStatus,
    administrative_transition,
    renewal_transition,
    validate_date_range,
)
from credwatch.domain.models import ComplianceAlert, LicenseTypeConfig, TrackedCredential


# Baseline alert windows per credential category; operators tune rows after seeding.
DEFAULT_LICENSE_TYPES: tuple[dict[str, object], ...] = (
    {
        "category": "state_license",
        "display_name": "State License",
        "alert_days_before": 30,
        "escalation_days_before": 7,
        "lead_time_days": 60,
        "is_critical": True,
    },
    {
        "category": "dea_license",
        "display_name": "DEA License",
        "alert_days_before": 30,
        "escalation_days_before": 7,
        "lead_time_days": 90,
        "is_critical": True,
    },
    {
        "category": "board_certification",
        "display_name": "Board Certification",
        "alert_days_before": 60,
        "escalation_days_before": 14,
        "lead_time_days": 120,
        "is_critical": False,
    },
    {
        "category": "training",
        "display_name": "Training",
        "alert_days_before": 30,
        "escalation_days_before": 7,
        "lead_time_days": 14,
        "is_critical": False,
    },
    {
        "category": "clinic_license",
        "display_name": "Clinic License",
        "alert_days_before": 60,
        "escalation_days_before": 14,
        "lead_time_days": 90,
        "is_critical": True,
    },
    {
        "category": "caqh_attestation",
        "display_name": "CAQH Attestation",
        "alert_days_before": 30,
        "escalation_days_before": 7,
        "lead_time_days": 7,
        "is_critical": False,
    },
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _get_credential_or_raise(session: AsyncSession, credential_id: str) -> TrackedCredential:
    row = await session.get(TrackedCredential, credential_id)
    if row is None:
        raise CredentialNotFoundError(f"tracked credential {credential_id} not found")
    return row


async def create_tracked_credential(
    session: AsyncSession,
    *,
    category: str,
    owner_type: str,
    owner_id: str,
    identifier: str,
    expiration_date: date | None,
    issue_date: date | None = None,
    contact_email: str | None = None,
    alerts_suppressed: bool = False,
    commit: bool = True,
) -> TrackedCredential:
    validate_date_range(issue_date, expiration_date)
    row = TrackedCredential(
        category=category,
        owner_type=owner_type,
        owner_id=owner_id,
        identifier=identifier,
        issue_date=issue_date,
        expiration_date=expiration_date,
        contact_email=contact_email,
        alerts_suppressed=alerts_suppressed,
        status=CredentialStatus.ACTIVE.value,
    )
    session.add(row)
    if commit:
        await session.commit()
    else:
        await session.flush()
    return row


async def get_tracked_credential(session: AsyncSession, credential_id: str) -> TrackedCredential | None:
    return await session.get(TrackedCredential, credential_id)


async def list_tracked_credentials(
    session: AsyncSession,
    *,
    categories: Iterable[str] | None = None,
    owner_id: str | None = None,
    statuses: Iterable[str] | None = None,
    expiring_on_or_before: date | None = None,
) -> list[TrackedCredential]:
    # Stable ordering keeps scan reports comparable between runs.
    stmt = select(TrackedCredential)
    if categories is not None:
        stmt = stmt.where(TrackedCredential.category.in_(list(categories)))
    if owner_id is not None:
        stmt = stmt.where(TrackedCredential.owner_id == owner_id)
    if statuses is not None:
        stmt = stmt.where(TrackedCredential.status.in_(list(statuses)))
    if expiring_on_or_before is not None:
        stmt = stmt.where(TrackedCredential.expiration_date <= expiring_on_or_before)
    result = await session.execute(stmt.order_by(TrackedCredential.expiration_date, TrackedCredential.id))
    return list(result.scalars().all())


async def update_status(
    session: AsyncSession,
    credential_id: str,
    status: CredentialStatus,
    *,
    commit: bool = True,
) -> TrackedCredential:
    # Engine write path; administrative changes go through set_administrative_status.
    row = await _get_credential_or_raise(session, credential_id)
    if row.status != status.value:
        row.status = status.value
        row.status_changed_at = _utc_now()
    if commit:
        await session.commit()
    return row


async def set_administrative_status(
    session: AsyncSession,
    credential_id: str,
    status: str | CredentialStatus,
    *,
    commit: bool = True,
) -> TrackedCredential:
    row = await _get_credential_or_raise(session, credential_id)
    target = administrative_transition(row.status, status)
    if row.status != target.value:
        row.status = target.value
        row.status_changed_at = _utc_now()
    if commit:
        await session.commit()
    return row


async def renew_credential(
    session: AsyncSession,
    credential_id: str,
    *,
    expiration_date: date,
    issue_date: date | None = None,
    identifier: str | None = None,
    commit: bool = True,
) -> TrackedCredential:
    # Renewal resets alert history so the new term gets a full alert sequence.
    row = await _get_credential_or_raise(session, credential_id)
    new_issue_date = issue_date if issue_date is not None else row.issue_date
    validate_date_range(new_issue_date, expiration_date)
    target = renewal_transition(row.status)
    row.issue_date = new_issue_date
    row.expiration_date = expiration_date
    if identifier is not None:
        row.identifier = identifier
    if row.status != target.value:
        row.status = target.value
        row.status_changed_at = _utc_now()
    row.last_alert_sent_at = None
    row.last_alert_tier = None
    if commit:
        await session.commit()
    return row


async def set_alert_suppression(
    session: AsyncSession,
    credential_id: str,
    *,
    suppressed: bool,
    commit: bool = True,
) -> TrackedCredential:
    row = await _get_credential_or_raise(session, credential_id)
    row.alerts_suppressed = bool(suppressed)
    if commit:
        await session.commit()
    return row


async def record_alert_sent(
    session: AsyncSession,
    credential_id: str,
    *,
    tier: str,
    days_remaining: int,
    recipient: str | None,
    sent_at: datetime | None = None,
    commit: bool = True,
) -> ComplianceAlert:
    row = await _get_credential_or_raise(session, credential_id)
    timestamp = sent_at or _utc_now()
    row.last_alert_sent_at = timestamp
    row.last_alert_tier = tier
    alert = ComplianceAlert(
        credential_id=credential_id,
        tier=tier,
        days_remaining=days_remaining,
        recipient=recipient,
        status="sent",
        created_at=timestamp,
    )
    session.add(alert)
    if commit:
        await session.commit()
    return alert


async def record_alert_failure(
    session: AsyncSession,
    credential_id: str,
    *,
    tier: str,
    days_remaining: int,
    recipient: str | None,
    error: str,
    commit: bool = True,
) -> ComplianceAlert:
    # Failed sends leave last_alert_sent_at untouched so the next scan retries the tier.
    alert = ComplianceAlert(
        credential_id=credential_id,
        tier=tier,
        days_remaining=days_remaining,
        recipient=recipient,
        status="failed",
        error=error[:2000],
    )
    session.add(alert)
    if commit:
        await session.commit()
    return alert


async def list_alerts(session: AsyncSession, credential_id: str) -> list[ComplianceAlert]:
    result = await session.execute(
        select(ComplianceAlert)
        .where(ComplianceAlert.credential_id == credential_id)
        .order_by(ComplianceAlert.id)
    )
    return list(result.scalars().all())


async def get_license_type_config(session: AsyncSession, category: str) -> LicenseTypeConfig | None:
    return await session.get(LicenseTypeConfig, category)


async def list_license_type_configs(session: AsyncSession) -> dict[str, LicenseTypeConfig]:
    result = await session.execute(select(LicenseTypeConfig))
    return {row.category: row for row in result.scalars().all()}


def validate_license_type_windows(
    *, alert_days_before: int, escalation_days_before: int, lead_time_days: int
) -> None:
    if alert_days_before < 0 or escalation_days_before < 0 or lead_time_days < 0:
        raise ExpirationError("alert windows must be non-negative")
    if escalation_days_before > alert_days_before:
        raise ExpirationError("escalation_days_before must not exceed alert_days_before")


async def upsert_license_type_config(
    session: AsyncSession,
    *,
    category: str,
    display_name: str,
    alert_days_before: int,
    escalation_days_before: int,
    lead_time_days: int = 0,
    is_critical: bool = False,
    commit: bool = True,
) -> LicenseTypeConfig:
    validate_license_type_windows(
        alert_days_before=alert_days_before,
        escalation_days_before=escalation_days_before,
        lead_time_days=lead_time_days,
    )
    row = await session.get(LicenseTypeConfig, category)
    if row is None:
        row = LicenseTypeConfig(category=category)
        session.add(row)
    row.display_name = display_name
    row.alert_days_before = alert_days_before
    row.escalation_days_before = escalation_days_before
    row.lead_time_days = lead_time_days
    row.is_critical = is_critical
    if commit:
        await session.commit()
    return row


async def ensure_default_license_types(session: AsyncSession) -> int:
    # Seed missing categories only; existing rows keep operator edits.
    existing = set((await session.execute(select(LicenseTypeConfig.category))).scalars().all())
    added = 0
    for defaults in DEFAULT_LICENSE_TYPES:
        if defaults["category"] in existing:
            continue
        session.add(LicenseTypeConfig(**defaults))
        added += 1
    if added:
        await session.commit()
    return added


async def count_credentials_by_status(session: AsyncSession) -> dict[str, dict[str, int]]:
    rows = (
        await session.execute(
            select(TrackedCredential.category, TrackedCredential.status, func.count())
            .group_by(TrackedCredential.category, TrackedCredential.status)
        )
    ).all()
    summary: dict[str, dict[str, int]] = {}
    for category, status, count in rows:
        summary.setdefault(category, {})[status] = int(count)
    return summary
