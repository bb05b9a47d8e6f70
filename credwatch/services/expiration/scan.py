from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
import logging
import time
from typing import Any, Iterable, Sequence
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credwatch.core.config import advance_notice_days, get_settings
from credwatch.core.errors import CredwatchError, DatabaseError
from credwatch.domain.credentials import AlertDue, CredentialEvaluation
from credwatch.domain.models import LicenseTypeConfig, TrackedCredential
from credwatch.persistence.db import SessionLocal
from credwatch.persistence.repos.credentials import (
    get_tracked_credential,
    list_license_type_configs,
    list_tracked_credentials,
    record_alert_failure,
    record_alert_sent,
    update_status,
)
from credwatch.services.audit import record_event
from credwatch.services.expiration.engine import evaluate, utc_today
from credwatch.services.notifications.base import NotificationSender
from credwatch.services.notifications.factory import get_notification_sender
from credwatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ESCALATING_TIERS = frozenset({"escalation", "expired"})


@dataclass(frozen=True)
class ScanFailure:
    credential_id: str
    stage: str
    error: str
    code: str | None = None


@dataclass
class ScanReport:
    scan_id: str
    as_of: date
    started_at: datetime
    finished_at: datetime | None = None
    total: int = 0
    evaluated: int = 0
    skipped: int = 0
    not_started: int = 0
    status_changes: int = 0
    alerts_sent: int = 0
    alerts_suppressed: int = 0
    failures: list[ScanFailure] = field(default_factory=list)
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["as_of"] = self.as_of.isoformat()
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return payload


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _alert_timestamp(as_of: date) -> datetime:
    # Scans for any other day stamp alerts on that day so de-duplication windows line up.
    now = _utc_now()
    if as_of == now.date():
        return now
    return datetime.combine(as_of, datetime.min.time(), tzinfo=timezone.utc)


def build_alert_payload(
    credential: TrackedCredential,
    evaluation: CredentialEvaluation,
    due: AlertDue,
    type_config: LicenseTypeConfig | None,
    *,
    escalation_recipient: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "credential_id": credential.id,
        "category": credential.category,
        "category_name": type_config.display_name if type_config is not None else credential.category,
        "identifier": credential.identifier,
        "owner_type": credential.owner_type,
        "owner_id": credential.owner_id,
        "expiration_date": credential.expiration_date.isoformat() if credential.expiration_date else None,
        "days_remaining": due.days_remaining,
        "tier": due.tier.name,
        "status": evaluation.status.value,
        "renewal_due": evaluation.renewal_due,
        "cc": [],
    }
    # Critical categories copy compliance staff on the same message instead of sending twice.
    if evaluation.is_critical and due.tier.name in ESCALATING_TIERS and escalation_recipient:
        payload["cc"] = [escalation_recipient]
    return payload


class _ScanControl:
    def __init__(self, *, stop_event: asyncio.Event | None, deadline: float | None) -> None:
        self._stop_event = stop_event
        self._deadline = deadline

    def should_stop(self) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline


async def _persist_status(session: AsyncSession, evaluation: CredentialEvaluation) -> None:
    # Status commits before any notification so a crash never leaves an alert without its status.
    await update_status(session, evaluation.credential_id, evaluation.status, commit=False)
    await record_event(
        session=session,
        event_type="credential.status_changed",
        outcome="success",
        resource_type="tracked_credential",
        resource_id=evaluation.credential_id,
        metadata={
            "from": evaluation.previous_status.value,
            "to": evaluation.status.value,
            "days_remaining": evaluation.days_remaining,
        },
    )
    await session.commit()


async def _send_alert(
    *,
    session: AsyncSession,
    sender: NotificationSender,
    credential: TrackedCredential,
    evaluation: CredentialEvaluation,
    due: AlertDue,
    type_config: LicenseTypeConfig | None,
    report: ScanReport,
) -> None:
    credential_id = credential.id
    settings = get_settings()
    recipient = credential.contact_email or settings.expiration_escalation_recipient
    if not recipient:
        report.failures.append(
            ScanFailure(credential_id, "notify", "no contact email or escalation recipient", "missing_recipient")
        )
        return
    payload = build_alert_payload(
        credential,
        evaluation,
        due,
        type_config,
        escalation_recipient=settings.expiration_escalation_recipient,
    )
    try:
        await sender.send(recipient, due.tier.name, payload)
    except Exception as exc:  # noqa: BLE001 - provider failures must not abort the scan
        logger.warning(
            "expiration_alert_failed credential_id=%s tier=%s", credential_id, due.tier.name, exc_info=exc
        )
        increment_counter("expiration_alert_failures_total")
        report.failures.append(
            ScanFailure(credential_id, "notify", str(exc) or exc.__class__.__name__, getattr(exc, "code", None))
        )
        try:
            await record_alert_failure(
                session,
                credential_id,
                tier=due.tier.name,
                days_remaining=due.days_remaining,
                recipient=recipient,
                error=str(exc) or exc.__class__.__name__,
            )
        except SQLAlchemyError as record_exc:
            await session.rollback()
            logger.warning("expiration_alert_failure_record_failed credential_id=%s", credential_id, exc_info=record_exc)
        return

    try:
        await record_alert_sent(
            session,
            credential_id,
            tier=due.tier.name,
            days_remaining=due.days_remaining,
            recipient=recipient,
            sent_at=_alert_timestamp(report.as_of),
        )
    except SQLAlchemyError as exc:
        # The message went out; without the timestamp the next scan will resend this tier.
        await session.rollback()
        logger.error("expiration_alert_record_failed credential_id=%s tier=%s", credential_id, due.tier.name, exc_info=exc)
        report.failures.append(ScanFailure(credential_id, "record_alert", str(exc), DatabaseError.code))
        return
    report.alerts_sent += 1
    increment_counter(f"expiration_alerts_sent_total.{due.tier.name}")


async def _process_credential(
    *,
    credential_id: str,
    session_factory: async_sessionmaker[AsyncSession],
    configs: dict[str, LicenseTypeConfig],
    sender: NotificationSender,
    as_of: date,
    advance_days: Sequence[int],
    report: ScanReport,
    semaphore: asyncio.Semaphore,
    control: _ScanControl,
) -> None:
    async with semaphore:
        if control.should_stop():
            report.cancelled = True
            report.not_started += 1
            return
        try:
            async with session_factory() as session:
                credential = await get_tracked_credential(session, credential_id)
                if credential is None:
                    report.skipped += 1
                    return
                type_config = configs.get(credential.category)
                try:
                    evaluation = evaluate(credential, type_config, as_of, advance_days=advance_days)
                except CredwatchError as exc:
                    report.failures.append(ScanFailure(credential_id, "evaluate", str(exc), exc.code))
                    return
                if evaluation is None:
                    report.skipped += 1
                    return
                report.evaluated += 1

                if evaluation.status_changed:
                    try:
                        await _persist_status(session, evaluation)
                    except SQLAlchemyError as exc:
                        await session.rollback()
                        logger.error("expiration_status_persist_failed credential_id=%s", credential_id, exc_info=exc)
                        report.failures.append(ScanFailure(credential_id, "persist_status", str(exc), DatabaseError.code))
                        return
                    report.status_changes += 1

                if evaluation.suppressed:
                    report.alerts_suppressed += 1
                for due in evaluation.alerts_due:
                    await _send_alert(
                        session=session,
                        sender=sender,
                        credential=credential,
                        evaluation=evaluation,
                        due=due,
                        type_config=type_config,
                        report=report,
                    )
        except Exception as exc:  # noqa: BLE001 - one credential must never abort the scan
            logger.exception("expiration_scan_credential_failed credential_id=%s", credential_id)
            report.failures.append(
                ScanFailure(credential_id, "unexpected", str(exc) or exc.__class__.__name__, getattr(exc, "code", None))
            )


async def scan_all(
    *,
    as_of: date | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    sender: NotificationSender | None = None,
    categories: Iterable[str] | None = None,
    concurrency: int | None = None,
    stop_event: asyncio.Event | None = None,
    deadline: float | None = None,
    advance_days: Sequence[int] | None = None,
) -> ScanReport:
    """Evaluate every tracked credential, persist status changes and send due alerts.

    Per-credential failures land in the report. Setting ``stop_event`` or passing a
    monotonic ``deadline`` stops new credentials from starting while in-flight work
    completes.
    """
    settings = get_settings()
    session_factory = session_factory or SessionLocal
    sender = sender or get_notification_sender()
    as_of = as_of or utc_today()
    advance = list(advance_notice_days(settings) if advance_days is None else advance_days)
    if deadline is None and settings.expiration_scan_max_duration_s > 0:
        deadline = time.monotonic() + settings.expiration_scan_max_duration_s
    report = ScanReport(scan_id=uuid4().hex, as_of=as_of, started_at=_utc_now())

    async with session_factory() as session:
        credentials = await list_tracked_credentials(session, categories=categories)
        configs = await list_license_type_configs(session)
    credential_ids = [row.id for row in credentials]
    report.total = len(credential_ids)
    logger.info("expiration_scan_started scan_id=%s as_of=%s total=%s", report.scan_id, as_of, report.total)

    semaphore = asyncio.Semaphore(max(1, int(concurrency or settings.expiration_scan_concurrency)))
    control = _ScanControl(stop_event=stop_event, deadline=deadline)
    await asyncio.gather(
        *(
            _process_credential(
                credential_id=credential_id,
                session_factory=session_factory,
                configs=configs,
                sender=sender,
                as_of=as_of,
                advance_days=advance,
                report=report,
                semaphore=semaphore,
                control=control,
            )
            for credential_id in credential_ids
        )
    )
    report.finished_at = _utc_now()
    increment_counter("expiration_scans_total")
    logger.info(
        "expiration_scan_finished scan_id=%s evaluated=%s skipped=%s status_changes=%s alerts_sent=%s failures=%s cancelled=%s",
        report.scan_id,
        report.evaluated,
        report.skipped,
        report.status_changes,
        report.alerts_sent,
        len(report.failures),
        report.cancelled,
    )
    return report
