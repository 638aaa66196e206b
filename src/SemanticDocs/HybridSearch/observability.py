"""
Lightweight observability primitives for indexing and retrieval.

The pipeline records counters (batches submitted, retries, degraded queries,
rerank fallbacks), histograms (stage latencies), and gauges (store size) in
an in-memory :class:`MetricsCollector`, and emits timing spans through
:class:`TraceRecorder`. :class:`Observability` bundles both with the logger
the components share, so a single object can be injected everywhere.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, Iterator, Mapping, MutableMapping, Optional, Tuple

_LabelKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class CounterSample:
    """Sample from a counter metric with labels and value.

    Attributes:
        name: Name of the counter metric
        labels: Dictionary of label key-value pairs
        value: Current counter value
    """

    name: str
    labels: Mapping[str, str]
    value: float


@dataclass
class HistogramSample:
    """Sample from a histogram metric with percentile statistics.

    Attributes:
        name: Name of the histogram metric
        labels: Dictionary of label key-value pairs
        count: Number of retained observations
        p50: 50th percentile (median) value
        p95: 95th percentile value
        p99: 99th percentile value
    """

    name: str
    labels: Mapping[str, str]
    count: int
    p50: float
    p95: float
    p99: float


def _percentile(sorted_samples: list[float], fraction: float) -> float:
    return sorted_samples[int(fraction * (len(sorted_samples) - 1))]


class MetricsCollector:
    """Thread-safe in-memory metrics with bounded histogram windows.

    Examples:
        >>> collector = MetricsCollector()
        >>> collector.increment("embedding.batches", status="ok")
        >>> collector.observe("search.total_ms", 12.5)
        >>> collector.counter("embedding.batches", status="ok")
        1.0
    """

    def __init__(self, *, histogram_window: int = 2048) -> None:
        self._lock = threading.RLock()
        self._window = histogram_window
        self._counters: MutableMapping[_LabelKey, float] = defaultdict(float)
        self._histograms: Dict[_LabelKey, Deque[float]] = {}
        self._gauges: MutableMapping[_LabelKey, float] = {}

    @staticmethod
    def _key(name: str, labels: Mapping[str, str]) -> _LabelKey:
        return name, tuple(sorted((key, str(value)) for key, value in labels.items()))

    def increment(self, name: str, amount: float = 1.0, **labels: str) -> None:
        """Increase counter ``name`` by ``amount``."""
        with self._lock:
            self._counters[self._key(name, labels)] += amount

    def observe(self, name: str, value: float, **labels: str) -> None:
        """Append ``value`` to histogram ``name``; old samples roll off the window."""
        key = self._key(name, labels)
        with self._lock:
            samples = self._histograms.get(key)
            if samples is None:
                samples = deque(maxlen=self._window)
                self._histograms[key] = samples
            samples.append(float(value))

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            self._gauges[self._key(name, labels)] = float(value)

    def counter(self, name: str, **labels: str) -> float:
        """Return the current value of a counter (0.0 when never incremented)."""
        with self._lock:
            return self._counters.get(self._key(name, labels), 0.0)

    def gauge(self, name: str, **labels: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(self._key(name, labels))

    def percentile(self, name: str, fraction: float, **labels: str) -> Optional[float]:
        """Return the ``fraction`` percentile of histogram ``name``, if it has samples."""
        if not 0.0 <= fraction <= 1.0:
            raise ValueError("fraction must be within [0, 1]")
        with self._lock:
            samples = sorted(self._histograms.get(self._key(name, labels), ()))
        if not samples:
            return None
        return _percentile(samples, fraction)

    def export_counters(self) -> Iterable[CounterSample]:
        """Iterate over collected counter metrics as structured samples."""
        with self._lock:
            items = list(self._counters.items())
        for (name, labels), value in items:
            yield CounterSample(name=name, labels=dict(labels), value=value)

    def export_histograms(self) -> Iterable[HistogramSample]:
        """Iterate over collected histogram metrics summarized by percentiles."""
        with self._lock:
            items = [(key, sorted(samples)) for key, samples in self._histograms.items()]
        for (name, labels), sorted_samples in items:
            if not sorted_samples:
                continue
            yield HistogramSample(
                name=name,
                labels=dict(labels),
                count=len(sorted_samples),
                p50=_percentile(sorted_samples, 0.5),
                p95=_percentile(sorted_samples, 0.95),
                p99=_percentile(sorted_samples, 0.99),
            )

    def export_gauges(self) -> Dict[str, float]:
        with self._lock:
            return {
                name if not labels else f"{name}{{{','.join(f'{k}={v}' for k, v in labels)}}}": value
                for (name, labels), value in self._gauges.items()
            }


class TraceRecorder:
    """Context manager producing timing spans for tracing.

    Examples:
        >>> recorder = TraceRecorder(MetricsCollector(), logging.getLogger("test"))
        >>> with recorder.span("example"):
        ...     pass
    """

    def __init__(self, metrics: MetricsCollector, logger: logging.Logger) -> None:
        self._metrics = metrics
        self._logger = logger

    @contextmanager
    def span(self, name: str, **attributes: str) -> Iterator[None]:
        """Record execution duration for a traced operation.

        Raises:
            Exception: Propagates any exception raised inside the traced block.
        """
        start = time.perf_counter()
        status = "error"
        try:
            yield
            status = "ok"
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self._metrics.observe(f"trace.{name}_ms", duration_ms, **attributes)
            payload: Dict[str, object] = {
                "span": name,
                "duration_ms": round(duration_ms, 3),
                "status": status,
            }
            payload.update(attributes)
            self._logger.debug("hybrid-trace", extra={"event": payload})


class Observability:
    """Facade for metrics, structured logging, and tracing.

    Examples:
        >>> obs = Observability()
        >>> sorted(obs.metrics_snapshot())
        ['counters', 'gauges', 'histograms']
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._metrics = MetricsCollector()
        self._logger = logger or logging.getLogger("SemanticDocs.HybridSearch")
        self._tracer = TraceRecorder(self._metrics, self._logger)

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def trace(self, name: str, **attributes: str) -> Iterator[None]:
        """Create a tracing span context for measuring critical operations."""
        return self._tracer.span(name, **attributes)

    def metrics_snapshot(self) -> Dict[str, object]:
        """Produce a serializable snapshot of counters, histograms, and gauges."""
        counters = [sample.__dict__ for sample in self._metrics.export_counters()]
        histograms = [sample.__dict__ for sample in self._metrics.export_histograms()]
        return {
            "counters": counters,
            "histograms": histograms,
            "gauges": self._metrics.export_gauges(),
        }
