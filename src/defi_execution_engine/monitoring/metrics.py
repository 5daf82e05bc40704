"""Process-wide counters, gauges and latency series for the engine."""

from __future__ import annotations

import math
import re
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List

QUANTILES = (0.5, 0.9, 0.99)

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


def prometheus_name(name: str) -> str:
    """Map dotted engine metric names (``execution.deferred.capacity``) to Prometheus names."""

    cleaned = _INVALID_CHARS.sub("_", name) or "_"
    return f"_{cleaned}" if cleaned[0].isdigit() else cleaned


def quantile(sorted_values: List[float], q: float) -> float:
    """Nearest-rank quantile of an already sorted list."""

    if not sorted_values:
        return 0.0
    rank = max(math.ceil(q * len(sorted_values)) - 1, 0)
    return float(sorted_values[min(rank, len(sorted_values) - 1)])


@dataclass(slots=True)
class _Series:
    """Recent samples of one observed quantity plus lifetime count and sum."""

    samples: Deque[float]
    count: int = 0
    total: float = 0.0

    def add(self, value: float) -> None:
        self.samples.append(value)
        self.count += 1
        self.total += value

    def stats(self) -> Dict[str, float]:
        window = sorted(self.samples)
        if not window:
            return {}
        stats = {
            "count": float(self.count),
            "sum": self.total,
            "avg": sum(window) / len(window),
            "min": window[0],
            "max": window[-1],
        }
        for q in QUANTILES:
            stats[f"p{int(q * 100)}"] = quantile(window, q)
        return stats


@dataclass
class MetricsRegistry:
    """Thread-safe metrics store shared by the router, coordinator and lifecycle manager.

    Counter names are dotted paths; the last segment is often a reason or venue
    (``execution.deferred.key_busy``, ``venue_latency_ms.binance``) so related
    counters can be read back together with :meth:`counters_with_prefix`.
    """

    window: int = 1024
    _counters: Dict[str, float] = field(default_factory=dict, init=False)
    _gauges: Dict[str, float] = field(default_factory=dict, init=False)
    _series: Dict[str, _Series] = field(default_factory=dict, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def counters_with_prefix(self, prefix: str) -> Dict[str, float]:
        with self._lock:
            return {
                name[len(prefix):]: value for name, value in self._counters.items() if name.startswith(prefix)
            }

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def get_gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            series = self._series.get(name)
            if series is None:
                series = self._series[name] = _Series(deque(maxlen=self.window))
            series.add(float(value))

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {name: series.stats() for name, series in self._series.items()},
            }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines: List[str] = []
        for kind in ("counters", "gauges"):
            prom_type = "counter" if kind == "counters" else "gauge"
            for name, value in sorted(snap[kind].items()):
                metric = prometheus_name(name)
                lines.append(f"# TYPE {metric} {prom_type}")
                lines.append(f"{metric} {value}")
        for name, stats in sorted(snap["histograms"].items()):
            if not stats:
                continue
            metric = prometheus_name(name)
            lines.append(f"# TYPE {metric} summary")
            for q in QUANTILES:
                lines.append(f'{metric}{{quantile="{q}"}} {stats[f"p{int(q * 100)}"]}')
            lines.append(f"{metric}_sum {stats['sum']}")
            lines.append(f"{metric}_count {int(stats['count'])}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._series.clear()


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry", "prometheus_name", "quantile"]
