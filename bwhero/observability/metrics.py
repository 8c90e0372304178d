"""
Metrics — In-process counters for the proxy, exported in Prometheus text.

## Usage

    from bwhero.observability.metrics import metrics

    metrics.increment("bypass_total", labels={"reason": "too-small"})
    metrics.timing("transcode_duration_seconds", 0.42)
    metrics.gauge("transcode_inflight").inc()

    # Served at GET /metrics
    output = metrics.export_prometheus()
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

LabelKey = str


@dataclass
class MetricPoint:
    """A single metric data point."""

    name: str
    value: float
    timestamp: float
    labels: Dict[str, str] = field(default_factory=dict)


def _labels_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _labels_from_key(key: LabelKey) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    if key:
        for pair in key.split(","):
            k, _, v = pair.partition("=")
            labels[k] = v
    return labels


class _Metric:
    kind = ""

    def __init__(self, name: str, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self._values: Dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """Get current value."""
        return self._values.get(_labels_key(labels), 0)

    def total(self) -> float:
        """Sum across all label sets."""
        return sum(self._values.values())

    def export(self) -> List[MetricPoint]:
        now = time.time()
        return [
            MetricPoint(self.name, value, now, _labels_from_key(key))
            for key, value in list(self._values.items())
        ]


class Counter(_Metric):
    """A monotonically increasing counter."""

    kind = "counter"

    def inc(self, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        if value < 0:
            raise ValueError("counters only go up")
        with self._lock:
            self._values[_labels_key(labels)] += value


class Gauge(_Metric):
    """A gauge that can go up and down."""

    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._values[_labels_key(labels)] = value

    def inc(self, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._values[_labels_key(labels)] += value

    def dec(self, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        self.inc(-value, labels)


class Histogram(_Metric):
    """A histogram for timing distributions."""

    kind = "histogram"
    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf"))

    def __init__(self, name: str, help_text: str = "", buckets: Optional[tuple] = None):
        super().__init__(name, help_text)
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[LabelKey, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = _labels_key(labels)
        with self._lock:
            self._values[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        return self._totals.get(_labels_key(labels), 0)

    def export(self) -> List[MetricPoint]:
        """Cumulative buckets plus _sum and _count, per label set."""
        points = []
        now = time.time()
        for key in list(self._totals.keys()):
            labels = _labels_from_key(key)
            # observe() counts a value in every bucket it fits, so counts are already cumulative
            for bucket in self.buckets:
                le = "+Inf" if bucket == float("inf") else str(bucket)
                points.append(MetricPoint(
                    f"{self.name}_bucket", self._counts[key].get(bucket, 0), now, {**labels, "le": le},
                ))
            points.append(MetricPoint(f"{self.name}_sum", self._values[key], now, labels))
            points.append(MetricPoint(f"{self.name}_count", self._totals[key], now, labels))
        return points


class MetricsRegistry:
    """
    Central registry for all metrics.

    Thread-safe; one instance is shared by every request thread.
    """

    def __init__(self, prefix: str = "bwhero"):
        self.prefix = prefix
        self._metrics: Dict[str, _Metric] = {}
        self._lock = Lock()
        self._register_proxy_metrics()

    def _register_proxy_metrics(self) -> None:
        self.counter("requests_total", "Proxy requests by outcome")
        self.counter("bypass_total", "Responses forwarded unmodified, by reason")
        self.counter("redirect_total", "Clients sent to the origin, by failure kind")
        self.counter("transcode_total", "Successful transcodes by output format")
        self.counter("transcode_failed_total", "Failed transcodes by failure kind")
        self.counter("transcode_fallback_total", "Format fallbacks after codec rejection")
        self.counter("bytes_original_total", "Origin bytes of transcoded images")
        self.counter("bytes_saved_total", "Bytes saved by transcoding")
        self.histogram("transcode_duration_seconds", "Wall time of metadata read + encode")
        self.histogram("fetch_duration_seconds", "Origin fetch duration")
        self.gauge("transcode_inflight", "Codec calls currently holding a slot")

    def _get_or_create(self, cls, name: str, help_text: str) -> Any:
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            metric = self._metrics.get(full_name)
            if metric is None:
                metric = cls(full_name, help_text)
                self._metrics[full_name] = metric
            elif not isinstance(metric, cls):
                raise TypeError(f"{full_name} is a {metric.kind}, not a {cls.kind}")
            return metric

    def counter(self, name: str, help_text: str = "") -> Counter:
        """Get or create a counter."""
        return self._get_or_create(Counter, name, help_text)

    def gauge(self, name: str, help_text: str = "") -> Gauge:
        """Get or create a gauge."""
        return self._get_or_create(Gauge, name, help_text)

    def histogram(self, name: str, help_text: str = "") -> Histogram:
        """Get or create a histogram."""
        return self._get_or_create(Histogram, name, help_text)

    # Convenience methods
    def increment(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        self.counter(name).inc(value, labels)

    def timing(self, name: str, seconds: float, labels: Optional[Dict[str, str]] = None) -> None:
        self.histogram(name).observe(seconds, labels)

    def reset(self) -> None:
        """Drop all recorded values (tests)."""
        with self._lock:
            self._metrics.clear()
        self._register_proxy_metrics()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for metric in list(self._metrics.values()):
            lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for point in metric.export():
                lines.append(f"{point.name}{self._format_labels(point.labels)} {point.value}")
        return "\n".join(lines) + "\n"

    def export_json(self) -> Dict[str, Any]:
        """Totals per metric (GET /metrics?format=json)."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": {name: metric.total() for name, metric in self._metrics.items()},
        }

    def _format_labels(self, labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(pairs) + "}"


# Global metrics instance
metrics = MetricsRegistry()
