from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
import logging
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

from redis.asyncio import Redis

from credwatch.core.config import get_settings
from credwatch.core.errors import IntegrationUnavailableError
from credwatch.services.telemetry import increment_counter, record_external_call, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

_redis_client: Redis | None = None
_redis_client_loop: asyncio.AbstractEventLoop | None = None
_redis_init_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    """Return the Redis client shared by scan locks and breakers, or None without REDIS_URL."""
    url = get_settings().redis_url
    if not url:
        return None
    loop = asyncio.get_running_loop()
    global _redis_client, _redis_client_loop
    if _redis_client is not None and _redis_client_loop is loop:
        return _redis_client
    async with _redis_init_lock:
        if _redis_client is None or _redis_client_loop is not loop:
            try:
                _redis_client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
            except ValueError as exc:
                logger.warning("resilience_redis_url_invalid", exc_info=exc)
                return None
            _redis_client_loop = loop
    return _redis_client


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Exponential in the attempt number with +-50% jitter.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> T:
    policy = policy or default_retry_policy()
    retryable = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless the failure is retryable
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.delay_s(attempt))
    raise AssertionError("unreachable")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {BreakerState.CLOSED: 0.0, BreakerState.HALF_OPEN: 0.5, BreakerState.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass(frozen=True)
class BreakerStatus:
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state.value,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> BreakerStatus:
        opened_at = raw.get("opened_at")
        return cls(
            state=BreakerState(raw.get("state") or BreakerState.CLOSED.value),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Closed/open/half-open breaker shared across workers through a Redis hash when available."""

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._clock = time_source or time.monotonic
        self._local = BreakerStatus()
        self._redis_key = f"{settings.cb_redis_prefix}:{name}"

    @property
    def name(self) -> str:
        return self._name

    async def status(self) -> BreakerStatus:
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._redis_key)
        return BreakerStatus.from_mapping(raw) if raw else BreakerStatus()

    async def _store(self, status: BreakerStatus) -> None:
        if self._redis is None:
            self._local = status
            return
        await self._redis.hset(self._redis_key, mapping=status.to_mapping())
        await self._redis.expire(self._redis_key, max(self._config.open_seconds * 4, 60))

    async def _move_to(self, current: BreakerStatus, target: BreakerState) -> BreakerStatus:
        if current.state is not target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state.value, target.value)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target.value}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        status = BreakerStatus(state=target, opened_at=self._clock() if target is BreakerState.OPEN else None)
        await self._store(status)
        return status

    async def before_call(self) -> None:
        status = await self.status()
        if status.state is BreakerState.OPEN:
            cooled = status.opened_at is not None and self._clock() - status.opened_at >= self._config.open_seconds
            if not cooled:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            status = await self._move_to(status, BreakerState.HALF_OPEN)
        if status.state is BreakerState.HALF_OPEN:
            if status.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            await self._store(replace(status, trials=status.trials + 1))

    async def record_success(self) -> None:
        status = await self.status()
        if status.state is BreakerState.CLOSED:
            if status.failures:
                await self._store(BreakerStatus())
            return
        await self._move_to(status, BreakerState.CLOSED)

    async def record_failure(self) -> None:
        status = await self.status()
        failures = status.failures + 1
        if status.state is BreakerState.HALF_OPEN or failures >= self._config.failure_threshold:
            await self._move_to(status, BreakerState.OPEN)
            return
        await self._store(replace(status, failures=failures))


_breakers: dict[str, CircuitBreaker] = {}


async def get_circuit_breaker(name: str) -> CircuitBreaker:
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = _breakers[name] = CircuitBreaker(name, redis=await get_resilience_redis())
    return breaker


def reset_circuit_breakers() -> None:
    _breakers.clear()


async def guarded_call(
    integration: str,
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    benign: Callable[[Exception], bool] | None = None,
) -> T:
    """Run func under the integration's breaker and retry policy and record call telemetry.

    Exceptions matching ``benign`` (a missing S3 key, for example) are re-raised but count as a
    healthy answer from the integration. IntegrationUnavailableError means the breaker is open.
    """
    breaker = await get_circuit_breaker(integration)
    await breaker.before_call()
    start = time.monotonic()
    try:
        result = await retry_async(func, policy=policy, retryable=retryable)
    except Exception as exc:
        healthy = benign is not None and benign(exc)
        if healthy:
            await breaker.record_success()
        else:
            await breaker.record_failure()
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=healthy)
        raise
    await breaker.record_success()
    record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
    return result
