from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import math
import time


@dataclass(frozen=True)
class CallSample:
    recorded_at: float
    integration: str
    latency_ms: float
    success: bool


# In-process only; the one-shot scripts print a snapshot when they finish.
_samples: deque[CallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _samples.append(CallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def _percentile(sorted_values: list[float], fraction: float) -> float:
    index = max(0, math.ceil(fraction * len(sorted_values)) - 1)
    return sorted_values[index]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float]]:
    """Nearest-rank p50/p95 latency and error rate per integration over the last window_s seconds."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[CallSample]] = {}
    for sample in _samples:
        if sample.recorded_at >= cutoff:
            grouped.setdefault(sample.integration, []).append(sample)
    summary: dict[str, dict[str, float]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        summary[integration] = {
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "error_rate": sum(not sample.success for sample in samples) / len(samples),
        }
    return summary


def reset_telemetry() -> None:
    _samples.clear()
    _counters.clear()
    _gauges.clear()
