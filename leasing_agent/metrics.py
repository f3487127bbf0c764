from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
            "gauges": dict(self.gauges),
        }


class CompositeMetrics:
    """
    Write-only metrics fanout.

    The server feeds both a test-inspectable Metrics and the process-level exporter.
    """

    def __init__(self, *sinks: Any) -> None:
        self._sinks = [s for s in sinks if s is not None]

    def inc(self, name: str, value: int = 1) -> None:
        for s in self._sinks:
            s.inc(name, value)

    def observe(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.observe(name, value)

    def set(self, name: str, value: int) -> None:
        for s in self._sinks:
            if hasattr(s, "set"):
                s.set(name, value)


M = {
    # Dispatcher
    "events_total": "webhook.events_total",
    "events_unrecognized_total": "webhook.events_unrecognized_total",
    "events_invalid_total": "webhook.events_invalid_total",
    "session_busy_rejections_total": "sessions.busy_rejections_total",
    "sessions_active": "sessions.active",
    # Generation pipeline
    "steps_per_turn": "pipeline.steps_per_turn",
    "step_limit_hits_total": "pipeline.step_limit_hits_total",
    "provider_errors_total": "pipeline.provider_errors_total",
    "disconnects_total": "pipeline.disconnects_total",
    "turn_ms": "pipeline.turn_ms",
    # Tools
    "tool_invocations_total": "tools.invocations_total",
    "tool_failures_total": "tools.failures_total",
    "tool_invalid_arguments_total": "tools.invalid_arguments_total",
    "tool_latency_ms": "tools.latency_ms",
    # Storage
    "store_persist_total": "store.persist_total",
}
