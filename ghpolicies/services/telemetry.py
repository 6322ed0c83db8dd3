from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture GitHub call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Counters cover scan and action outcomes for ops dashboards.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = max(0, min(len(ordered) - 1, math.ceil(pct / 100.0 * len(ordered)) - 1))
    return ordered[index]


def external_call_stats(window_s: int = 300) -> dict[str, dict[str, float | int | None]]:
    # Summarize per-integration latency and error rate over a rolling window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    stats: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        latencies = [sample.latency_ms for sample in samples]
        failures = sum(1 for sample in samples if not sample.success)
        stats[integration] = {
            "count": len(samples),
            "error_rate": failures / len(samples),
            "p50_ms": _percentile(latencies, 50),
            "p95_ms": _percentile(latencies, 95),
        }
    return stats


def reset_telemetry() -> None:
    _external_samples.clear()
    _counters.clear()
