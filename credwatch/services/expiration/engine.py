from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Sequence

from credwatch.core.config import advance_notice_days
from credwatch.core.errors import MissingConfig
from credwatch.domain.credentials import (
    HELD_STATUSES,
    AlertDue,
    AlertTier,
    CredentialEvaluation,
    CredentialStatus,
    coerce_status,
    engine_transition,
    validate_date_range,
)
from credwatch.domain.models import LicenseTypeConfig, TrackedCredential


EXPIRED_TIER = AlertTier("expired", -1)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def build_alert_tiers(
    type_config: LicenseTypeConfig, *, advance_days: Sequence[int] | None = None
) -> tuple[AlertTier, ...]:
    """Return the alert tiers for a category ordered from most to least urgent.

    Escalation and warning come from the category config. Advance notices only apply
    beyond the warning window, so a 30-day warning category with 90/60 advance days
    gets tiers at 90, 60, 30, the escalation threshold, and after expiry.
    """
    escalation_days = max(0, int(type_config.escalation_days_before))
    warning_days = max(escalation_days, int(type_config.alert_days_before))
    tiers: dict[int, AlertTier] = {EXPIRED_TIER.days: EXPIRED_TIER}
    tiers[escalation_days] = AlertTier("escalation", escalation_days)
    tiers.setdefault(warning_days, AlertTier("warning", warning_days))
    days_iter = advance_notice_days() if advance_days is None else advance_days
    for days in days_iter:
        if days > warning_days:
            tiers.setdefault(days, AlertTier(f"advance_{days}", days))
    return tuple(sorted(tiers.values(), key=lambda tier: tier.days))


def _date_of(value: datetime | date) -> date:
    # Naive timestamps come back from SQLite; treat them as UTC like everything else we store.
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def already_alerted(last_alert_sent_at: datetime | date | None, window_start: date) -> bool:
    if last_alert_sent_at is None:
        return False
    return _date_of(last_alert_sent_at) >= window_start


def status_for_days_remaining(days_remaining: int, type_config: LicenseTypeConfig) -> CredentialStatus:
    if days_remaining < 0:
        return CredentialStatus.EXPIRED
    window = max(int(type_config.alert_days_before), int(type_config.escalation_days_before))
    if days_remaining <= window:
        return CredentialStatus.EXPIRING_SOON
    return CredentialStatus.ACTIVE


def evaluate(
    credential: TrackedCredential,
    type_config: LicenseTypeConfig | None,
    as_of: date | None = None,
    *,
    advance_days: Sequence[int] | None = None,
) -> CredentialEvaluation | None:
    """Compute status and due alerts for one credential without touching storage.

    Returns None for credentials that carry no expiration date.
    """
    if credential.expiration_date is None:
        return None
    validate_date_range(credential.issue_date, credential.expiration_date)
    if type_config is None:
        raise MissingConfig(credential.category)
    as_of = as_of or utc_today()
    expiration_date = credential.expiration_date
    days_remaining = (expiration_date - as_of).days

    previous = coerce_status(credential.status or CredentialStatus.ACTIVE.value)
    computed = status_for_days_remaining(days_remaining, type_config)
    status = engine_transition(previous, computed)

    held = status in HELD_STATUSES
    suppressed = bool(credential.alerts_suppressed)
    alerts: tuple[AlertDue, ...] = ()
    if not held:
        # Only the most urgent satisfied tier can fire; less urgent windows opened earlier.
        tier = next(
            (t for t in build_alert_tiers(type_config, advance_days=advance_days) if t.is_satisfied(days_remaining)),
            None,
        )
        if tier is not None:
            window_start = tier.window_start(expiration_date)
            if not already_alerted(credential.last_alert_sent_at, window_start) and not suppressed:
                alerts = (AlertDue(tier=tier, days_remaining=days_remaining, window_start=window_start),)

    return CredentialEvaluation(
        credential_id=credential.id,
        category=credential.category,
        previous_status=previous,
        status=status,
        days_remaining=days_remaining,
        alerts_due=alerts,
        suppressed=suppressed,
        renewal_due=not held and days_remaining <= int(type_config.lead_time_days or 0),
        is_critical=bool(type_config.is_critical),
        as_of=as_of,
    )
