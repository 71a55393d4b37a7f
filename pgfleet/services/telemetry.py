from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class NodeCallSample:
    ts: float
    operation: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_node_call_samples: Deque[NodeCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for ops dashboards.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_node_call(*, operation: str, latency_ms: float, success: bool) -> None:
    # Capture managed-node call latency and outcomes.
    _node_call_samples.append(
        NodeCallSample(ts=time.time(), operation=operation, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def _p95(values: list[float]) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    idx = max(0, math.ceil(0.95 * len(ordered)) - 1)
    return ordered[idx]


def p95_request_latency(window_s: int) -> float | None:
    cutoff = time.time() - window_s
    return _p95([sample.latency_ms for sample in _request_samples if sample.ts >= cutoff])


def node_call_summary(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate per-operation node call outcomes for the ops metrics endpoint.
    cutoff = time.time() - window_s
    grouped: dict[str, list[NodeCallSample]] = defaultdict(list)
    for sample in _node_call_samples:
        if sample.ts >= cutoff:
            grouped[sample.operation].append(sample)
    summary: dict[str, dict[str, float | int | None]] = {}
    for operation, samples in grouped.items():
        summary[operation] = {
            "count": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95_ms": _p95([sample.latency_ms for sample in samples]),
        }
    return summary


def reset_telemetry() -> None:
    # Tests reset module state to keep assertions independent.
    _request_samples.clear()
    _node_call_samples.clear()
    _counters.clear()
    _gauges.clear()
