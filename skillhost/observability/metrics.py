# skillhost/observability/metrics.py
from __future__ import annotations
import threading
import time
from typing import Any, Dict, List, Optional

DEFAULT_LATENCY_BUCKETS = [0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]


class Counter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def get(self) -> int:
        with self._lock:
            return self._value


class Gauge:
    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, v: float) -> None:
        with self._lock:
            self._value = float(v)

    def get(self) -> float:
        with self._lock:
            return self._value


class Histogram:
    """
    Static-bucket histogram; a value lands in the first bucket >= value,
    overflow goes to +inf.
    """

    def __init__(self, buckets: List[float]):
        self.buckets = sorted(set(buckets))
        self._counts: Dict[str, int] = {str(b): 0 for b in self.buckets}
        self._counts["+inf"] = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            for b in self.buckets:
                if value <= b:
                    self._counts[str(b)] += 1
                    return
            self._counts["+inf"] += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {"buckets": dict(self._counts), "sum": self._sum, "count": sum(self._counts.values())}


class MetricsRegistry:
    """
    In-process metrics for one runtime instance.
    Names may be qualified with a label, e.g. counter("dispatch.failed", skill="weather").
    """

    def __init__(self) -> None:
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _name(name: str, labels: Dict[str, Any]) -> str:
        if not labels:
            return name
        suffix = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
        return f"{name}{{{suffix}}}"

    def counter(self, name: str, **labels: Any) -> Counter:
        key = self._name(name, labels)
        with self._lock:
            if key not in self._counters:
                self._counters[key] = Counter()
            return self._counters[key]

    def gauge(self, name: str, **labels: Any) -> Gauge:
        key = self._name(name, labels)
        with self._lock:
            if key not in self._gauges:
                self._gauges[key] = Gauge()
            return self._gauges[key]

    def histogram(self, name: str, buckets: Optional[List[float]] = None, **labels: Any) -> Histogram:
        key = self._name(name, labels)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = Histogram(buckets or DEFAULT_LATENCY_BUCKETS)
            return self._histograms[key]

    def timer(self, name: str, **labels: Any):
        """
        with metrics.timer("dispatch.latency"):
            invoke()
        """
        hist = self.histogram(name, **labels)

        class _Timer:
            def __enter__(self_inner):
                self_inner._start = time.monotonic()
                return self_inner

            def __exit__(self_inner, exc_type, exc, tb):
                hist.observe(time.monotonic() - self_inner._start)
                return False

        return _Timer()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histograms = dict(self._histograms)
        out: Dict[str, Any] = {}
        for n, c in counters.items():
            out[f"{n}.count"] = c.get()
        for n, g in gauges.items():
            out[f"{n}.gauge"] = g.get()
        for n, h in histograms.items():
            out[f"{n}.histogram"] = h.snapshot()
        return out
