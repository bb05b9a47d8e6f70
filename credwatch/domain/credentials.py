"""Credential status state machine and evaluation value types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from credwatch.core.errors import InvalidDateRange, InvalidStatusTransition


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
    PENDING_RENEWAL = "pending_renewal"


# Statuses only the expiration engine may assign.
ENGINE_STATUSES = frozenset(
    {CredentialStatus.ACTIVE, CredentialStatus.EXPIRING_SOON, CredentialStatus.EXPIRED}
)
# Statuses only an administrator may assign.
ADMINISTRATIVE_STATUSES = frozenset(
    {CredentialStatus.SUSPENDED, CredentialStatus.REVOKED, CredentialStatus.PENDING_RENEWAL}
)
# Holds the engine never overrides and never alerts on.
HELD_STATUSES = frozenset({CredentialStatus.SUSPENDED, CredentialStatus.REVOKED})


def coerce_status(value: str | CredentialStatus) -> CredentialStatus:
    try:
        return CredentialStatus(value)
    except ValueError as exc:
        raise InvalidStatusTransition(f"unknown credential status {value!r}") from exc


def engine_transition(current: str | CredentialStatus, computed: CredentialStatus) -> CredentialStatus:
    """Resolve the status the engine should persist given the date-derived status.

    Administrative holds win over dates. A pending renewal stays pending until the
    credential actually lapses.
    """
    current_status = coerce_status(current)
    if computed not in ENGINE_STATUSES:
        raise InvalidStatusTransition(f"engine cannot assign {computed.value}")
    if current_status in HELD_STATUSES:
        return current_status
    if current_status is CredentialStatus.PENDING_RENEWAL and computed is not CredentialStatus.EXPIRED:
        return current_status
    return computed


def administrative_transition(
    current: str | CredentialStatus, target: str | CredentialStatus
) -> CredentialStatus:
    current_status = coerce_status(current)
    target_status = coerce_status(target)
    if target_status in ENGINE_STATUSES:
        raise InvalidStatusTransition(
            f"{target_status.value} is computed from expiration dates and cannot be set directly"
        )
    if target_status is current_status:
        return current_status
    # Leaving a hold requires a renewal, not a different administrative flag.
    if current_status in HELD_STATUSES and target_status is CredentialStatus.PENDING_RENEWAL:
        raise InvalidStatusTransition(f"cannot move from {current_status.value} to pending_renewal; renew instead")
    return target_status


def validate_date_range(issue_date: date | None, expiration_date: date | None) -> None:
    if issue_date is not None and expiration_date is not None and expiration_date < issue_date:
        raise InvalidDateRange(
            f"expiration_date {expiration_date.isoformat()} precedes issue_date {issue_date.isoformat()}"
        )


def renewal_transition(current: str | CredentialStatus) -> CredentialStatus:
    # Renewal is the only exit from a hold; the next scan recomputes from the new dates.
    coerce_status(current)
    return CredentialStatus.ACTIVE


@dataclass(frozen=True)
class AlertTier:
    # days is measured before expiration; the expired tier uses -1 so its window opens the day after.
    name: str
    days: int

    def window_start(self, expiration_date: date) -> date:
        return expiration_date - timedelta(days=self.days)

    def is_satisfied(self, days_remaining: int) -> bool:
        return days_remaining <= self.days


@dataclass(frozen=True)
class AlertDue:
    tier: AlertTier
    days_remaining: int
    window_start: date


@dataclass(frozen=True)
class CredentialEvaluation:
    credential_id: str
    category: str
    previous_status: CredentialStatus
    status: CredentialStatus
    days_remaining: int
    alerts_due: tuple[AlertDue, ...] = ()
    suppressed: bool = False
    renewal_due: bool = False
    is_critical: bool = False
    as_of: date | None = None

    @property
    def status_changed(self) -> bool:
        return self.status is not self.previous_status
