"""
Tests for the metrics registry.
"""

import threading

import pytest

from bwhero.observability.metrics import Counter, Gauge, Histogram, MetricsRegistry


class TestCounter:
    """Tests for Counter metric."""

    def test_increment(self):
        counter = Counter("test_counter")

        counter.inc()
        counter.inc()
        counter.inc(5)

        assert counter.get() == 7

    def test_increment_with_labels(self):
        counter = Counter("test_counter")

        counter.inc(1, labels={"reason": "too-small"})
        counter.inc(2, labels={"reason": "non-image"})
        counter.inc(1, labels={"reason": "too-small"})

        assert counter.get(labels={"reason": "too-small"}) == 2
        assert counter.get(labels={"reason": "non-image"}) == 2
        assert counter.total() == 4

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            Counter("c").inc(-1)

    def test_thread_safe(self):
        counter = Counter("c")

        def work():
            for _ in range(1000):
                counter.inc()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counter.get() == 8000


class TestGauge:

    def test_up_and_down(self):
        gauge = Gauge("inflight")
        gauge.inc()
        gauge.inc()
        gauge.dec()
        assert gauge.get() == 1

    def test_set(self):
        gauge = Gauge("g")
        gauge.set(42)
        assert gauge.get() == 42


class TestHistogram:

    def test_observe(self):
        hist = Histogram("duration", buckets=(0.1, 1, float("inf")))
        hist.observe(0.05)
        hist.observe(0.5)
        hist.observe(5)

        assert hist.count() == 3
        points = {(p.name, p.labels.get("le")): p.value for p in hist.export()}
        assert points[("duration_bucket", "0.1")] == 1
        assert points[("duration_bucket", "1")] == 2
        assert points[("duration_bucket", "+Inf")] == 3
        assert points[("duration_sum", None)] == pytest.approx(5.55)


class TestMetricsRegistry:

    def test_proxy_metrics_preregistered(self):
        text = MetricsRegistry().export_prometheus()
        for name in ("requests_total", "bypass_total", "redirect_total", "transcode_total",
                     "bytes_saved_total", "transcode_duration_seconds", "transcode_inflight"):
            assert f"bwhero_{name}" in text

    def test_get_or_create_returns_same(self):
        registry = MetricsRegistry()
        assert registry.counter("x") is registry.counter("x")

    def test_kind_mismatch(self):
        registry = MetricsRegistry()
        registry.counter("x")
        with pytest.raises(TypeError):
            registry.gauge("x")

    def test_prometheus_labels(self):
        registry = MetricsRegistry()
        registry.increment("bypass_total", labels={"reason": "too-small"})
        assert 'bwhero_bypass_total{reason="too-small"} 1' in registry.export_prometheus()

    def test_timing(self):
        registry = MetricsRegistry()
        registry.timing("transcode_duration_seconds", 0.2, labels={"format": "avif"})
        assert registry.histogram("transcode_duration_seconds").count(labels={"format": "avif"}) == 1

    def test_export_json_totals(self):
        registry = MetricsRegistry()
        registry.increment("bytes_saved_total", 100)
        registry.increment("bytes_saved_total", 50)
        assert registry.export_json()["metrics"]["bwhero_bytes_saved_total"] == 150

    def test_reset(self):
        registry = MetricsRegistry()
        registry.increment("requests_total")
        registry.reset()
        assert registry.counter("requests_total").get() == 0
