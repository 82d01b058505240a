"""
Parla Metrics — in-process counters, gauges and latency histograms.

Names are dotted ("agent.audio.dropped"); labels become a sorted
``{k=v,...}`` suffix, so each label combination is its own series.

Usage:
    from parla.core.metrics import metrics

    metrics.inc("agent.audio.dropped", labels={"reason": "backpressure"})
    metrics.observe("agent.connect_ms", 212.0)
    metrics.gauge_set("agent.outbound.pending", 3)
"""

from __future__ import annotations

import time
from collections import defaultdict, deque


class MetricsCollector:
    """Counters, gauges and bounded histograms for one process."""

    HISTOGRAM_MAX_SAMPLES = 1000

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = {}
        self._started_at = time.time()

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        self._counters[series_key(name, labels)] += value

    def counter(self, name: str, labels: dict | None = None) -> int:
        """Current counter value (0 if never incremented)."""
        return self._counters.get(series_key(name, labels), 0)

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        self._gauges[series_key(name, labels)] = value

    def gauge(self, name: str, labels: dict | None = None) -> float | None:
        return self._gauges.get(series_key(name, labels))

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        """Record one sample; only the newest HISTOGRAM_MAX_SAMPLES are kept."""
        key = series_key(name, labels)
        if key not in self._histograms:
            self._histograms[key] = deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        self._histograms[key].append(value)

    def snapshot(self) -> dict:
        """Plain-dict view: uptime, counters, gauges and histogram summaries."""
        return {
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": {
                key: _summarize(samples)
                for key, samples in self._histograms.items()
                if samples
            },
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()


def series_key(name: str, labels: dict | None = None) -> str:
    """'agent.audio.dropped', {'reason': 'invalid'} -> 'agent.audio.dropped{reason=invalid}'"""
    if not labels:
        return name
    pairs = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{pairs}}}"


def _summarize(samples: deque[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "p50": ordered[n // 2],
        "p95": ordered[min(int(n * 0.95), n - 1)],
    }


# Shared by every module in the process
metrics = MetricsCollector()
