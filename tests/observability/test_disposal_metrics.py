import math

import pytest

from gcdispose.observability.metrics import (
    DisposalOutcome,
    MetricsRegistry,
    disposal_counter,
    disposal_latency_histogram,
    get_metrics_summary,
    get_registry,
    init_metrics,
    pending_references_gauge,
    record_disposal,
    record_drainer_restarts,
    record_pending,
)


class TestMetricsRegistry:
    """Tests for MetricsRegistry."""

    def test_counter_is_shared_by_name(self):
        registry = MetricsRegistry()
        registry.counter("disposals_gc").increment()
        registry.counter("disposals_gc").increment(2)

        assert registry.counter("disposals_gc").get_value() == 3

    def test_labels_create_distinct_metrics(self):
        registry = MetricsRegistry()
        registry.counter("disposals", labels={"strength": "weak"}).increment()
        registry.counter("disposals", labels={"strength": "soft"}).increment(5)

        metrics = registry.get_all_metrics()
        assert metrics["disposals{strength=weak}"]["value"] == 1
        assert metrics["disposals{strength=soft}"]["value"] == 5

    def test_histogram_buckets(self):
        registry = MetricsRegistry()
        histogram = registry.histogram("latency", buckets=[0.1, 1.0])
        histogram.observe(0.05)
        histogram.observe(0.5)

        assert histogram.get_count() == 2
        assert histogram.get_sum() == pytest.approx(0.55)
        assert histogram.get_bucket_counts() == {0.1: 1, 1.0: 2}

    def test_gauge(self):
        registry = MetricsRegistry()
        gauge = registry.gauge("references_pending")
        gauge.set(3)
        gauge.increment()
        gauge.decrement(2)

        assert gauge.get_value() == 2

    def test_reset_all(self):
        registry = MetricsRegistry()
        registry.counter("c").increment()
        registry.gauge("g").set(1)
        registry.histogram("h").observe(1.0)

        registry.reset_all()

        metrics = registry.get_all_metrics()
        assert metrics["c"]["value"] == 0
        assert metrics["g"]["value"] == 0
        assert metrics["h"]["count"] == 0

    def test_histogram_counts_values_above_largest_bound(self):
        registry = MetricsRegistry()
        histogram = registry.histogram("latency", buckets=[1.0, 0.1])
        histogram.observe(0.05)
        histogram.observe(30.0)

        assert histogram.buckets == (0.1, 1.0)
        assert histogram.get_bucket_counts() == {0.1: 1, 1.0: 1, math.inf: 2}

    def test_counter_rejects_negative_increment(self):
        counter = MetricsRegistry().counter("disposals_gc")
        with pytest.raises(ValueError, match="only increase"):
            counter.increment(-1)

    def test_name_reused_with_other_type_rejected(self):
        registry = MetricsRegistry()
        registry.counter("references_pending")

        with pytest.raises(TypeError, match="already registered as a counter"):
            registry.gauge("references_pending")


class TestGlobalMetrics:
    """Tests for the module-level registry helpers."""

    def test_disabled_by_default(self):
        init_metrics()

        assert get_registry() is None
        assert get_metrics_summary() == {"error": "Metrics not initialized"}

    def test_helpers_require_initialization(self):
        with pytest.raises(RuntimeError, match="Metrics not initialized"):
            disposal_counter("disposals_gc")

    def test_enabled_from_environment(self, monkeypatch):
        monkeypatch.setenv("GCDISPOSE_METRICS_ENABLED", "1")
        init_metrics()

        assert get_registry() is not None

    def test_helpers_after_initialization(self):
        init_metrics(enabled=True)

        disposal_counter("disposals_gc").increment()
        pending_references_gauge().set(4)
        disposal_latency_histogram().observe(0.002)

        summary = get_metrics_summary()
        assert "timestamp" in summary
        assert summary["metrics"]["disposals_gc"]["value"] == 1
        assert summary["metrics"]["references_pending"]["value"] == 4
        assert summary["metrics"]["disposer_latency"]["count"] == 1

    def test_second_initialization_keeps_registry(self):
        init_metrics(enabled=True)
        registry = get_registry()

        init_metrics(enabled=True)

        assert get_registry() is registry

    def test_recorders_are_noops_when_disabled(self):
        record_disposal(DisposalOutcome.DISPOSED, 0.001)
        record_pending(3)
        record_drainer_restarts(1)

        assert get_registry() is None

    def test_recorders_attach_descriptions(self):
        init_metrics(enabled=True)

        record_disposal(DisposalOutcome.DISPOSED, 0.001)
        record_disposal(DisposalOutcome.FAILED)
        record_pending(2)
        record_drainer_restarts(0)

        metrics = get_metrics_summary()["metrics"]
        assert metrics["disposals_gc"]["value"] == 1
        assert metrics["disposal_failures"]["description"] == "Disposers that raised while run by a drainer"
        assert metrics["disposer_latency"]["count"] == 1
        assert metrics["references_pending"]["value"] == 2
        assert "drainer_restarts" not in metrics
