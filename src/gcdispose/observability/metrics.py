"""
Disposal Metrics Collection for gcdispose.

In-process, thread-safe counters, gauges and histograms describing what the
disposal runtime is doing. Metrics are off by default: until `init_metrics()`
creates a registry, the `record_*` functions used by the runtime do nothing.

Usage:
    from gcdispose.observability.metrics import init_metrics, get_metrics_summary

    init_metrics(service_name="my-service")
    ...
    summary = get_metrics_summary()
    summary["metrics"]["disposals_gc"]["value"]
"""

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from gcdispose.config.env_guard import get_system_env_value
from gcdispose.config.logging_config import get_logger

log = get_logger(__name__)

# Disposer calls are usually microseconds; slow ones block a drainer worker.
DEFAULT_LATENCY_BUCKETS = (0.00001, 0.0001, 0.001, 0.01, 0.1, 1.0, 10.0)


class MetricType(str, Enum):
    """Supported metric types."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


class DisposalOutcome(str, Enum):
    """What happened to a reference taken off a disposal queue."""

    DISPOSED = "disposals_gc"
    SKIPPED = "disposals_skipped"
    FAILED = "disposal_failures"


@dataclass
class _Metric:
    name: str
    description: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    metric_type: ClassVar[MetricType]

    def snapshot(self) -> dict[str, Any]:
        return {"type": self.metric_type.value, "description": self.description, "labels": dict(self.labels)}


@dataclass
class CounterMetric(_Metric):
    """Monotonic count of events."""

    _value: int = 0

    metric_type = MetricType.COUNTER

    def increment(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._value += amount

    def get_value(self) -> int:
        with self._lock:
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["value"] = self.get_value()
        return data


@dataclass
class GaugeMetric(_Metric):
    """A value that is set, or moved up and down."""

    _value: float = 0.0

    metric_type = MetricType.GAUGE

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def increment(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def decrement(self, amount: float = 1.0) -> None:
        self.increment(-amount)

    def get_value(self) -> float:
        with self._lock:
            return self._value

    def reset(self) -> None:
        self.set(0.0)

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["value"] = self.get_value()
        return data


@dataclass
class HistogramMetric(_Metric):
    """
    Distribution of observed values over fixed upper bounds.

    Only per-bucket counts, the total count and the sum are kept, so memory
    stays constant however long the drainer runs. Values above the largest
    bound are counted in the implicit +Inf bucket.
    """

    buckets: tuple[float, ...] = DEFAULT_LATENCY_BUCKETS
    _counts: list[int] = field(default_factory=list, repr=False)
    _count: int = 0
    _sum: float = 0.0

    metric_type = MetricType.HISTOGRAM

    def __post_init__(self) -> None:
        self.buckets = tuple(sorted(self.buckets))
        self._counts = [0] * len(self.buckets)

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[index] += 1
                    break

    def get_count(self) -> int:
        with self._lock:
            return self._count

    def get_sum(self) -> float:
        with self._lock:
            return self._sum

    def get_bucket_counts(self) -> dict[float, int]:
        """Cumulative counts: observations <= each bound, plus +Inf."""
        with self._lock:
            counts: dict[float, int] = {}
            running = 0
            for bound, count in zip(self.buckets, self._counts):
                running += count
                counts[bound] = running
            if self._count > running:
                counts[math.inf] = self._count
            return counts

    def reset(self) -> None:
        with self._lock:
            self._counts = [0] * len(self.buckets)
            self._count = 0
            self._sum = 0.0

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data.update(count=self.get_count(), sum=self.get_sum(), buckets=self.get_bucket_counts())
        return data


class MetricsRegistry:
    """Get-or-create store for metrics, keyed by name and labels."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _make_key(name: str, labels: Optional[dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def _get_or_create(self, cls: type, name: str, labels: Optional[dict[str, str]], **kwargs: Any) -> Any:
        key = self._make_key(name, labels)
        with self._lock:
            metric = self._metrics.get(key)
            if metric is None:
                metric = cls(name=name, labels=dict(labels or {}), **kwargs)
                self._metrics[key] = metric
            elif not isinstance(metric, cls):
                raise TypeError(f"Metric {key} is already registered as a {metric.metric_type.value}")
            elif kwargs.get("description") and not metric.description:
                metric.description = kwargs["description"]
            return metric

    def counter(self, name: str, description: str = "", labels: Optional[dict[str, str]] = None) -> CounterMetric:
        return self._get_or_create(CounterMetric, name, labels, description=description)

    def gauge(self, name: str, description: str = "", labels: Optional[dict[str, str]] = None) -> GaugeMetric:
        return self._get_or_create(GaugeMetric, name, labels, description=description)

    def histogram(
        self,
        name: str,
        description: str = "",
        labels: Optional[dict[str, str]] = None,
        buckets: Optional[list[float]] = None,
    ) -> HistogramMetric:
        """Get or create a histogram. `buckets` only applies on creation."""
        if buckets:
            return self._get_or_create(HistogramMetric, name, labels, description=description, buckets=tuple(buckets))
        return self._get_or_create(HistogramMetric, name, labels, description=description)

    def get_all_metrics(self) -> dict[str, dict[str, Any]]:
        """Snapshot every metric in a format suitable for export."""
        with self._lock:
            metrics = list(self._metrics.items())
        return {key: metric.snapshot() for key, metric in metrics}

    def reset_all(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


_global_registry: Optional[MetricsRegistry] = None
_metrics_initialized = False


def _is_truthy(value: Optional[str]) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def init_metrics(service_name: str = "gcdispose", enabled: Optional[bool] = None) -> None:
    """
    Initialize the metrics collection system.

    Args:
        service_name: Name of the service for metric attribution
        enabled: Whether to enable metrics (defaults to GCDISPOSE_METRICS_ENABLED)
    """
    global _global_registry, _metrics_initialized

    if _metrics_initialized:
        log.warning("Metrics already initialized")
        return

    if enabled is None:
        enabled = _is_truthy(get_system_env_value("GCDISPOSE_METRICS_ENABLED"))

    if not enabled:
        log.info("Metrics disabled by configuration")
        return

    _global_registry = MetricsRegistry()
    _metrics_initialized = True
    log.info(f"Metrics initialized for service: {service_name}")


def shutdown_metrics() -> None:
    """Drop the global registry so metrics can be initialized again."""
    global _global_registry, _metrics_initialized
    _global_registry = None
    _metrics_initialized = False


def get_registry() -> Optional[MetricsRegistry]:
    """Get the global metrics registry."""
    return _global_registry


def _require_registry() -> MetricsRegistry:
    registry = get_registry()
    if registry is None:
        raise RuntimeError("Metrics not initialized. Call init_metrics() first.")
    return registry


_OUTCOME_DESCRIPTIONS = {
    DisposalOutcome.DISPOSED: "Disposers run by a drainer after the owner was collected",
    DisposalOutcome.SKIPPED: "Dequeued references that had already been disposed explicitly",
    DisposalOutcome.FAILED: "Disposers that raised while run by a drainer",
}


def disposal_counter(name: str, description: str = "") -> CounterMetric:
    """Get or create a disposal-related counter."""
    return _require_registry().counter(name, description=description)


def pending_references_gauge() -> GaugeMetric:
    """Gauge of references registered with a queue and not yet disposed."""
    return _require_registry().gauge(
        "references_pending",
        description="Tracked references registered for GC disposal and not yet disposed",
    )


def disposal_latency_histogram(
    name: str = "disposer_latency",
    description: str = "Disposer execution time in seconds",
) -> HistogramMetric:
    """Get or create the disposer latency histogram."""
    return _require_registry().histogram(name, description=description)


def record_disposal(outcome: DisposalOutcome, latency: Optional[float] = None) -> None:
    """Count a drainer outcome and, for completed disposals, its latency."""
    if get_registry() is None:
        return
    disposal_counter(outcome.value, _OUTCOME_DESCRIPTIONS[outcome]).increment()
    if latency is not None:
        disposal_latency_histogram().observe(latency)


def record_pending(count: int) -> None:
    if get_registry() is not None:
        pending_references_gauge().set(count)


def record_drainer_restarts(count: int) -> None:
    if get_registry() is not None and count:
        disposal_counter("drainer_restarts", "Drainer workers found dead and restarted").increment(count)


def get_metrics_summary() -> dict[str, Any]:
    """Get all metrics as a summary dictionary."""
    registry = get_registry()
    if registry is None:
        return {"error": "Metrics not initialized"}

    return {
        "timestamp": datetime.now().isoformat(),
        "metrics": registry.get_all_metrics(),
    }
