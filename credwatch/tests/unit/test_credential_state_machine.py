from __future__ import annotations

from datetime import date

import pytest

from credwatch.core.errors import (
    CredentialNotFoundError,
    ExpirationError,
    InvalidDateRange,
    InvalidStatusTransition,
)
from credwatch.domain.credentials import (
    CredentialStatus,
    administrative_transition,
    engine_transition,
)
from credwatch.persistence.repos.credentials import (
    create_tracked_credential,
    ensure_default_license_types,
    get_license_type_config,
    list_license_type_configs,
    renew_credential,
    set_administrative_status,
    set_alert_suppression,
    upsert_license_type_config,
)


def test_engine_moves_between_date_statuses() -> None:
    assert engine_transition("active", CredentialStatus.EXPIRING_SOON) is CredentialStatus.EXPIRING_SOON
    assert engine_transition("expiring_soon", CredentialStatus.EXPIRED) is CredentialStatus.EXPIRED


@pytest.mark.parametrize("held", ["suspended", "revoked"])
def test_engine_never_overrides_holds(held: str) -> None:
    for computed in (CredentialStatus.ACTIVE, CredentialStatus.EXPIRING_SOON, CredentialStatus.EXPIRED):
        assert engine_transition(held, computed).value == held


def test_engine_cannot_assign_administrative_status() -> None:
    with pytest.raises(InvalidStatusTransition):
        engine_transition("active", CredentialStatus.SUSPENDED)


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(InvalidStatusTransition):
        engine_transition("lapsed", CredentialStatus.ACTIVE)


def test_administrators_cannot_assign_date_statuses() -> None:
    with pytest.raises(InvalidStatusTransition):
        administrative_transition("active", "expired")


def test_held_credential_cannot_jump_to_pending_renewal() -> None:
    with pytest.raises(InvalidStatusTransition):
        administrative_transition("revoked", "pending_renewal")
    assert administrative_transition("suspended", "revoked") is CredentialStatus.REVOKED


@pytest.mark.asyncio
async def test_create_rejects_inverted_dates(session) -> None:
    with pytest.raises(InvalidDateRange):
        await create_tracked_credential(
            session,
            category="training",
            owner_type="employee",
            owner_id="emp-1",
            identifier="HIPAA-2024",
            issue_date=date(2024, 5, 1),
            expiration_date=date(2024, 4, 1),
        )


@pytest.mark.asyncio
async def test_suspend_then_renew_returns_to_active(session) -> None:
    credential = await create_tracked_credential(
        session,
        category="state_license",
        owner_type="employee",
        owner_id="emp-1",
        identifier="MD-1",
        issue_date=date(2023, 1, 1),
        expiration_date=date(2024, 1, 1),
    )
    suspended = await set_administrative_status(session, credential.id, "suspended")
    assert suspended.status == "suspended"
    assert suspended.status_changed_at is not None

    renewed = await renew_credential(session, credential.id, expiration_date=date(2026, 1, 1))
    assert renewed.status == "active"
    assert renewed.expiration_date == date(2026, 1, 1)
    assert renewed.last_alert_sent_at is None


@pytest.mark.asyncio
async def test_renew_unknown_credential_raises(session) -> None:
    with pytest.raises(CredentialNotFoundError):
        await renew_credential(session, "missing", expiration_date=date(2026, 1, 1))


@pytest.mark.asyncio
async def test_default_license_types_seed_once(session) -> None:
    assert await ensure_default_license_types(session) == 6
    assert await ensure_default_license_types(session) == 0
    configs = await list_license_type_configs(session)
    assert configs["dea_license"].is_critical is True


@pytest.mark.asyncio
async def test_upsert_rejects_escalation_beyond_alert_window(session) -> None:
    with pytest.raises(ExpirationError):
        await upsert_license_type_config(
            session,
            category="training",
            display_name="Training",
            alert_days_before=7,
            escalation_days_before=30,
        )


@pytest.mark.asyncio
async def test_upsert_overrides_seeded_windows(session) -> None:
    await ensure_default_license_types(session)
    await upsert_license_type_config(
        session,
        category="training",
        display_name="Annual Training",
        alert_days_before=45,
        escalation_days_before=10,
        lead_time_days=21,
    )
    config = await get_license_type_config(session, "training")
    assert (config.display_name, config.alert_days_before, config.escalation_days_before) == ("Annual Training", 45, 10)
    assert await get_license_type_config(session, "unknown") is None


@pytest.mark.asyncio
async def test_alert_suppression_toggles(session) -> None:
    credential = await create_tracked_credential(
        session,
        category="training",
        owner_type="employee",
        owner_id="emp-2",
        identifier="CPR-1",
        expiration_date=date(2025, 1, 1),
    )
    assert (await set_alert_suppression(session, credential.id, suppressed=True)).alerts_suppressed is True
    assert (await set_alert_suppression(session, credential.id, suppressed=False)).alerts_suppressed is False
