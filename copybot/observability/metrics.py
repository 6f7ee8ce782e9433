"""In-process metrics for the copy engine.

Counters: feed events and drops, duplicates, orders by terminal status,
retries. Gauges: outstanding orders, live pipelines, feed connectivity.
Histograms (bounded windows): fill latency, slippage, submit duration.

Names are dotted by component ("feed.malformed", "orders.filled"), so
a component's numbers can be pulled out with by_prefix(). Snapshot is
JSON-serializable and goes into the persisted engine status.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

_WINDOW = 2_000  # samples kept per histogram


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Percentile from pre-sorted data using linear interpolation."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_data[int(k)]
    return sorted_data[int(f)] * (c - k) + sorted_data[int(c)] * (k - f)


def _summarize(values: deque[float]) -> dict[str, float]:
    if not values:
        return {"count": 0, "avg": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
    s = sorted(values)
    return {
        "count": len(s),
        "avg": round(sum(s) / len(s), 6),
        "p50": round(_percentile(s, 50), 6),
        "p95": round(_percentile(s, 95), 6),
        "max": s[-1],
    }


class MetricsCollector:
    """Thread-safe counters, gauges and windowed histograms."""

    def __init__(self, window: int = _WINDOW) -> None:
        self._lock = Lock()
        self._window = window
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = {}
        self._started = time.time()

    def incr(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def histogram(self, name: str, value: float) -> None:
        with self._lock:
            window = self._histograms.get(name)
            if window is None:
                window = self._histograms[name] = deque(maxlen=self._window)
            window.append(value)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Record the block's wall time (seconds) into histogram `name`."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.histogram(name, time.monotonic() - start)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def by_prefix(self, prefix: str) -> dict[str, float]:
        """Counters under one component, e.g. by_prefix("orders")."""
        dotted = prefix.rstrip(".") + "."
        with self._lock:
            return {
                name[len(dotted):]: value
                for name, value in self._counters.items()
                if name.startswith(dotted)
            }

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_secs": round(time.time() - self._started, 1),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {k: _summarize(v) for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._started = time.time()


# Global singleton
metrics = MetricsCollector()
