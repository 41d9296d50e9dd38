"""
Switchboard Metrics — in-process counters, gauges and histograms.

No exporter. The snapshot is served by whatever management surface
embeds the kernel.

Usage:
    from switchboard.core.metrics import metrics

    metrics.inc("queue.tasks.enqueued", labels={"platform": "telegram"})
    metrics.observe("agent.duration_ms", 5321.0)
    metrics.gauge_set("queue.pending", 3, labels={"channel": "c1"})

    snapshot = metrics.snapshot()
"""

from __future__ import annotations

import time
from collections import defaultdict, deque


class MetricsCollector:
    """Counters, gauges, and rolling-window histograms keyed by name+labels."""

    HISTOGRAM_MAX_SAMPLES = 1000

    _instance: "MetricsCollector | None" = None

    @classmethod
    def get(cls) -> "MetricsCollector":
        """Return the process-wide singleton."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self) -> None:
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = defaultdict(float)
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        )
        self._started_at = time.time()

    def inc(self, name: str, value: float = 1, labels: dict | None = None) -> None:
        self._counters[self._key(name, labels)] += value

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        self._gauges[self._key(name, labels)] = value

    def gauge_inc(
        self, name: str, value: float = 1.0, labels: dict | None = None
    ) -> None:
        self._gauges[self._key(name, labels)] += value

    def gauge_dec(
        self, name: str, value: float = 1.0, labels: dict | None = None
    ) -> None:
        self._gauges[self._key(name, labels)] -= value

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        """Record one sample; the oldest drops out once the window is full."""
        self._histograms[self._key(name, labels)].append(value)

    def counter(self, name: str, labels: dict | None = None) -> float:
        return self._counters.get(self._key(name, labels), 0)

    def gauge(self, name: str, labels: dict | None = None) -> float:
        return self._gauges.get(self._key(name, labels), 0.0)

    def snapshot(self) -> dict:
        """Counters, gauges and p50/p95/max summaries — JSON friendly."""
        histograms: dict[str, dict] = {}
        for key, samples in self._histograms.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            histograms[key] = {
                "count": n,
                "p50": ordered[n // 2],
                "p95": ordered[min(int(n * 0.95), n - 1)],
                "max": ordered[-1],
            }
        return {
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Drop all recorded values. Used by tests."""
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()

    def _key(self, name: str, labels: dict | None) -> str:
        # "queue.pending{channel=c1}"
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Process-wide singleton, import this directly
metrics = MetricsCollector.get()
