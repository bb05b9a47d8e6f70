from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credwatch.core.config import get_settings
from credwatch.persistence.db import SessionLocal
from credwatch.persistence.repos.credentials import ensure_default_license_types
from credwatch.services.expiration.scan import scan_all
from credwatch.services.notifications.base import NotificationSender
from credwatch.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

EXPIRATION_SCAN_LOCK_KEY = "credwatch:expiration:scan:lock"

# Deletes the key only while it still holds our token.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_process_lock = asyncio.Lock()


@dataclass(frozen=True)
class ScanLock:
    token: str
    redis: Any | None = None


async def acquire_scan_lock() -> ScanLock | None:
    """Claim the scan for this worker, or return None when another worker holds it.

    Without Redis the claim is process-local, which is enough for a single worker.
    """
    token = uuid4().hex
    redis = await get_resilience_redis()
    if redis is None:
        if _process_lock.locked():
            return None
        await _process_lock.acquire()
        return ScanLock(token=token)
    ttl_s = max(5, int(get_settings().expiration_scan_lock_ttl_s))
    if not await redis.set(EXPIRATION_SCAN_LOCK_KEY, token, nx=True, ex=ttl_s):
        return None
    return ScanLock(token=token, redis=redis)


async def release_scan_lock(lock: ScanLock) -> None:
    if lock.redis is None:
        if _process_lock.locked():
            _process_lock.release()
        return
    released = await lock.redis.eval(_RELEASE_SCRIPT, 1, EXPIRATION_SCAN_LOCK_KEY, lock.token)
    if not released:
        logger.warning("expiration_scan_lock_expired token=%s", lock.token)


@asynccontextmanager
async def scan_lock() -> AsyncIterator[ScanLock | None]:
    lock = await acquire_scan_lock()
    try:
        yield lock
    finally:
        if lock is not None:
            await release_scan_lock(lock)


def _is_missing_table_error(exc: SQLAlchemyError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in ("undefinedtableerror", "does not exist", "no such table"))


async def run_expiration_scan_cycle(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    sender: NotificationSender | None = None,
    stop_event: asyncio.Event | None = None,
) -> dict[str, Any]:
    session_factory = session_factory or SessionLocal
    async with scan_lock() as lock:
        if lock is None:
            return {"status": "skipped_lock"}
        try:
            async with session_factory() as session:
                seeded = await ensure_default_license_types(session)
        except SQLAlchemyError as exc:
            # Workers can start before the schema exists; wait for the next interval.
            if _is_missing_table_error(exc):
                return {"status": "waiting_for_migrations"}
            raise
        if seeded:
            logger.info("license_types_seeded count=%s", seeded)
        report = await scan_all(session_factory=session_factory, sender=sender, stop_event=stop_event)
    return {"status": "cancelled" if report.cancelled else "ok", "report": report.as_dict()}


async def run_expiration_scan_loop(*, stop_event: asyncio.Event | None = None) -> None:
    stop_event = stop_event or asyncio.Event()
    interval_s = max(60, int(get_settings().expiration_scan_interval_s))
    while not stop_event.is_set():
        try:
            result = await run_expiration_scan_cycle(stop_event=stop_event)
        except Exception:  # noqa: BLE001 - the loop outlives a failed cycle; the next interval retries.
            logger.exception("expiration_scan_cycle_failed")
        else:
            logger.info("expiration_scan_cycle status=%s", result["status"])
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            pass
