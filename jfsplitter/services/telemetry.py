from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass


@dataclass
class UpstreamCallStats:
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def as_dict(self) -> dict[str, float | int]:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "avg_ms": round(self.total_ms / self.calls, 1) if self.calls else 0.0,
            "max_ms": round(self.max_ms, 1),
        }


# Process-wide; the proxy runs as a single event loop.
_upstream_stats: dict[str, UpstreamCallStats] = defaultdict(UpstreamCallStats)
_counters: dict[str, int] = defaultdict(int)


def record_upstream_call(*, upstream: str, latency_ms: float, success: bool) -> None:
    stats = _upstream_stats[upstream]
    stats.calls += 1
    stats.total_ms += latency_ms
    stats.max_ms = max(stats.max_ms, latency_ms)
    if not success:
        stats.failures += 1


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def upstream_call_summary() -> dict[str, dict[str, float | int]]:
    return {name: stats.as_dict() for name, stats in _upstream_stats.items()}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    _upstream_stats.clear()
    _counters.clear()
