from __future__ import annotations

import math
import time
from collections import Counter, defaultdict, deque
from typing import Iterable, NamedTuple


class RequestSample(NamedTuple):
    at: float
    path: str
    status_code: int
    latency_ms: float


class ExternalCallSample(NamedTuple):
    at: float
    integration: str
    latency_ms: float
    ok: bool


# Bounded rings; ops status only looks at the last few minutes.
_requests: deque[RequestSample] = deque(maxlen=20000)
_external_calls: deque[ExternalCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.append(RequestSample(time.time(), path, status_code, latency_ms))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_calls.append(ExternalCallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _recent(samples: Iterable[RequestSample | ExternalCallSample], window_s: int) -> list:
    cutoff = time.time() - window_s
    return [sample for sample in samples if sample.at >= cutoff]


def _percentile(values: list[float], pct: float) -> float:
    ordered = sorted(values)
    return ordered[max(0, math.ceil(pct * len(ordered)) - 1)]


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int]]:
    """Per-integration call count, failures and latency over the window."""
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _recent(_external_calls, window_s):
        grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float | int]] = {}
    for integration, calls in grouped.items():
        latencies = [call.latency_ms for call in calls]
        summary[integration] = {
            "calls": len(calls),
            "failures": sum(1 for call in calls if not call.ok),
            "p95_ms": _percentile(latencies, 0.95),
            "max_ms": max(latencies),
        }
    return summary


def request_error_rate(window_s: int) -> float | None:
    recent = _recent(_requests, window_s)
    if not recent:
        return None
    return sum(1 for sample in recent if sample.status_code >= 500) / len(recent)


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    for store in (_requests, _external_calls, _counters, _gauges):
        store.clear()
