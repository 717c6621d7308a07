"""
Observability for the disposal runtime.

Metrics are collected in-process and are disabled until `init_metrics()` is
called (or GCDISPOSE_METRICS_ENABLED is set when the default drainer starts).
"""

from .metrics import (
    CounterMetric,
    DisposalOutcome,
    GaugeMetric,
    HistogramMetric,
    MetricsRegistry,
    MetricType,
    disposal_counter,
    disposal_latency_histogram,
    get_metrics_summary,
    get_registry,
    init_metrics,
    pending_references_gauge,
    record_disposal,
    record_drainer_restarts,
    record_pending,
    shutdown_metrics,
)

__all__ = [
    "CounterMetric",
    "DisposalOutcome",
    "GaugeMetric",
    "HistogramMetric",
    "MetricType",
    "MetricsRegistry",
    "disposal_counter",
    "disposal_latency_histogram",
    "get_metrics_summary",
    "get_registry",
    "init_metrics",
    "pending_references_gauge",
    "record_disposal",
    "record_drainer_restarts",
    "record_pending",
    "shutdown_metrics",
]
