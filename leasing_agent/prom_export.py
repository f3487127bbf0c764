from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable


# Model turns run from sub-second to tens of seconds; step counts fit the low buckets.
_DEFAULT_BUCKETS = (
    1,
    2,
    3,
    4,
    5,
    50,
    100,
    250,
    500,
    1000,
    2500,
    5000,
    10000,
    30000,
    60000,
)


def _prom_name(name: str) -> str:
    # Prometheus does not allow '.' in metric names.
    return "leasing_agent_" + (name or "").replace(".", "_")


@dataclass(slots=True)
class _BucketHistogram:
    buckets: tuple[int, ...]
    counts: list[int] = field(default_factory=list)
    sum: int = 0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0 for _ in self.buckets] + [0]

    def observe(self, v: int) -> None:
        x = int(v)
        self.sum += x
        self.count += 1
        idx = len(self.buckets)
        for i, b in enumerate(self.buckets):
            if x <= b:
                idx = i
                break
        self.counts[idx] += 1

    def iter_cumulative(self) -> Iterable[tuple[str, int]]:
        running = 0
        for i, b in enumerate(self.buckets):
            running += self.counts[i]
            yield (str(b), running)
        running += self.counts[len(self.buckets)]
        yield ("+Inf", running)


class PromExporter:
    """
    Prometheus text exporter for counters, gauges and bucketed histograms.

    Raw samples are never kept, so memory stays bounded for long-running servers.
    """

    def __init__(self, *, buckets: tuple[int, ...] = _DEFAULT_BUCKETS) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._hists: dict[str, _BucketHistogram] = {}
        self._gauges: dict[str, int] = {}
        self._buckets = tuple(sorted(int(b) for b in buckets))

    def inc(self, name: str, value: int = 1) -> None:
        key = _prom_name(name)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(value)

    def observe(self, name: str, value: int) -> None:
        key = _prom_name(name)
        with self._lock:
            h = self._hists.get(key)
            if h is None:
                h = _BucketHistogram(buckets=self._buckets)
                self._hists[key] = h
            h.observe(int(value))

    def set(self, name: str, value: int) -> None:
        key = _prom_name(name)
        with self._lock:
            self._gauges[key] = int(value)

    def render(self) -> str:
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {self._counters[name]}")

            for name in sorted(self._hists):
                h = self._hists[name]
                lines.append(f"# TYPE {name} histogram")
                for le, c in h.iter_cumulative():
                    lines.append(f'{name}_bucket{{le="{le}"}} {c}')
                lines.append(f"{name}_sum {h.sum}")
                lines.append(f"{name}_count {h.count}")

            for name in sorted(self._gauges):
                lines.append(f"# TYPE {name} gauge")
                lines.append(f"{name} {self._gauges[name]}")

        return "\n".join(lines) + "\n"


GLOBAL_PROM = PromExporter()
