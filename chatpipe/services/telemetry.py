from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture generation/delivery/retrieval latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate external call latency per integration over the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for integration, latencies in by_integration.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def log_telemetry_summary(window_s: int, *, queue_depth: int | None = None) -> dict[str, object]:
    # Periodic one-line summary so counters and latency show up in worker logs.
    latency = external_latency_by_integration(window_s)
    counters = counters_snapshot()
    for integration, stats in sorted(latency.items()):
        logger.info(
            "external_latency integration=%s window_s=%s p95_ms=%.1f max_ms=%.1f",
            integration,
            window_s,
            stats["p95"],
            stats["max"],
        )
    logger.info(
        "telemetry_summary queue_depth=%s counters=%s",
        queue_depth if queue_depth is not None else "unknown",
        ",".join(f"{name}={value}" for name, value in sorted(counters.items())),
    )
    return {"queue_depth": queue_depth, "counters": counters, "latency": latency}


def reset_telemetry() -> None:
    # Tests start from empty counters.
    _counters.clear()
    _external_samples.clear()
