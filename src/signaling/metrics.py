"""Prometheus-compatible metrics for signaling observability.

Tracks connection churn, registry size, request outcomes, broadcast volume
and media engine call latency. Metrics are held in memory and exposed via the
/metrics endpoint in Prometheus exposition format.

Architecture:
    SignalingSession / BroadcastFanout → MetricsCollector → /metrics endpoint
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Histogram bucket for latency distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Cumulative observations <= le


@dataclass
class Histogram:
    """Histogram metric for tracking distributions."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)

    # Covers 1ms to 10s for media engine calls
    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=0.001),
            HistogramBucket(le=0.005),
            HistogramBucket(le=0.010),
            HistogramBucket(le=0.050),
            HistogramBucket(le=0.100),
            HistogramBucket(le=0.500),
            HistogramBucket(le=1.000),
            HistogramBucket(le=5.000),
            HistogramBucket(le=10.000),
            HistogramBucket(le=float("inf")),
        ]
    )

    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observed value in seconds
        """
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate a quantile by linear interpolation within buckets.

        Args:
            q: Quantile to calculate (0.0 to 1.0)

        Returns:
            Approximate quantile value, or None if no data
        """
        if self.count == 0:
            return None

        target_rank = q * self.count
        prev_count = 0
        prev_le = 0.0
        for bucket in self.buckets:
            if bucket.count >= target_rank:
                in_bucket = bucket.count - prev_count
                if in_bucket == 0 or bucket.le == float("inf"):
                    return prev_le if bucket.le == float("inf") else bucket.le
                rank_in_bucket = target_rank - prev_count
                return prev_le + (rank_in_bucket / in_bucket) * (bucket.le - prev_le)
            prev_count = bucket.count
            prev_le = bucket.le

        return self.buckets[-1].le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount


_COUNTER_HELP: dict[str, str] = {
    "clients_connected_total": "Total number of client connections accepted",
    "transports_created_total": "Total number of transports created",
    "requests_total": "Total number of signaling requests handled",
    "requests_dropped_total": "Total number of signaling requests dropped without a response",
    "broadcast_events_total": "Total number of events delivered by fanout",
    "engine_errors_total": "Total number of failed media engine calls",
}


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

        # Labeled counters keyed by (name, sorted label items)
        self._counters: dict[tuple[str, tuple[tuple[str, str], ...]], Counter] = {}
        self._gauges: dict[str, Gauge] = {
            "clients_active": Gauge(
                name="clients_active", help="Number of currently registered clients"
            ),
            "producers_active": Gauge(
                name="producers_active", help="Number of currently live producers"
            ),
        }
        self._histograms: dict[str, Histogram] = {
            "engine_call_seconds": Histogram(
                name="engine_call_seconds",
                help="Media engine call latency in seconds",
            ),
        }

        for name in ("clients_connected_total", "engine_errors_total"):
            self._counter(name, {})

        logger.info("MetricsCollector initialized")

    def _counter(self, name: str, labels: dict[str, str]) -> Counter:
        key = (name, tuple(sorted(labels.items())))
        counter = self._counters.get(key)
        if counter is None:
            counter = Counter(name=name, help=_COUNTER_HELP[name], labels=dict(labels))
            self._counters[key] = counter
        return counter

    # === Connection and registry metrics ===

    def record_client_connected(self) -> None:
        with self._lock:
            self._counter("clients_connected_total", {}).inc()
            self._gauges["clients_active"].inc()

    def record_client_disconnected(self) -> None:
        with self._lock:
            self._gauges["clients_active"].dec()

    def record_transport_created(self, direction: str) -> None:
        with self._lock:
            self._counter("transports_created_total", {"direction": direction}).inc()

    def set_producers_active(self, count: int) -> None:
        with self._lock:
            self._gauges["producers_active"].set(float(count))

    # === Request metrics ===

    def record_request(self, action: str) -> None:
        with self._lock:
            self._counter("requests_total", {"action": action}).inc()

    def record_request_dropped(self, action: str, reason: str) -> None:
        """Record a request dropped without a response.

        Args:
            action: Request action (or "unknown" for undecodable frames)
            reason: Error code explaining the drop
        """
        with self._lock:
            self._counter("requests_dropped_total", {"action": action, "reason": reason}).inc()

    def record_broadcast(self, event: str, recipients: int) -> None:
        with self._lock:
            self._counter("broadcast_events_total", {"event": event}).inc(recipients)

    def record_engine_call(self, latency_seconds: float, error: bool = False) -> None:
        with self._lock:
            self._histograms["engine_call_seconds"].observe(latency_seconds)
            if error:
                self._counter("engine_errors_total", {}).inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []

            emitted: set[str] = set()
            for counter in sorted(self._counters.values(), key=lambda c: c.name):
                if counter.name not in emitted:
                    lines.append(f"# HELP {counter.name} {counter.help}")
                    lines.append(f"# TYPE {counter.name} counter")
                    emitted.add(counter.name)
                lines.append(f"{counter.name}{self._format_labels(counter.labels)} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} gauge")
                lines.append(f"{gauge.name}{self._format_labels(gauge.labels)} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} histogram")
                labels_str = self._format_labels(histogram.labels)
                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    bucket_labels = self._format_labels({**histogram.labels, "le": le})
                    lines.append(f"{histogram.name}_bucket{bucket_labels} {bucket.count}")
                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        if not labels:
            return ""
        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for the monitoring dashboard."""
        with self._lock:

            def total(name: str) -> float:
                return sum(c.value for c in self._counters.values() if c.name == name)

            engine_hist = self._histograms["engine_call_seconds"]
            p95 = engine_hist.quantile(0.95)

            return {
                "clients_active": self._gauges["clients_active"].value,
                "producers_active": self._gauges["producers_active"].value,
                "clients_connected_total": total("clients_connected_total"),
                "transports_created_total": total("transports_created_total"),
                "requests_total": total("requests_total"),
                "requests_dropped_total": total("requests_dropped_total"),
                "broadcast_events_total": total("broadcast_events_total"),
                "engine_errors_total": total("engine_errors_total"),
                "engine_call_p95_ms": p95 * 1000 if p95 is not None else None,
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
