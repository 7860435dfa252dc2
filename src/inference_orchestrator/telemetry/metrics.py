"""Metrics collection and reporting with Prometheus integration."""

from dataclasses import dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


@dataclass
class MetricSnapshot:
    """Snapshot of in-process metric totals."""

    counters: dict[str, float] = field(default_factory=dict)
    gauges: dict[str, float] = field(default_factory=dict)


class MetricsCollector:
    """Centralized metrics collection with Prometheus integration.

    Each collector owns its registry so several orchestrators (or test cases)
    can live in one process without duplicate-timeseries errors.
    """

    def __init__(
        self,
        namespace: str = "inference_orchestrator",
        registry: CollectorRegistry | None = None,
    ):
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}
        self._totals: dict[str, float] = {}
        self._gauge_values: dict[str, float] = {}

        self._init_default_metrics()

    def _init_default_metrics(self):
        """Initialize default orchestration metrics."""
        ns = self.namespace

        self._counters["requests_total"] = Counter(
            f"{ns}_requests_total",
            "Total number of orchestrated requests",
            ["capability", "state"],
            registry=self.registry,
        )
        self._histograms["request_duration"] = Histogram(
            f"{ns}_request_duration_seconds",
            "End-to-end request duration in seconds",
            ["capability", "cache_hit"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )

        self._counters["provider_attempts"] = Counter(
            f"{ns}_provider_attempts_total",
            "Provider call attempts",
            ["provider", "model", "status"],
            registry=self.registry,
        )
        self._histograms["provider_latency"] = Histogram(
            f"{ns}_provider_latency_seconds",
            "Provider call latency",
            ["provider", "model"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )
        self._counters["provider_errors"] = Counter(
            f"{ns}_provider_errors_total",
            "Provider errors by category",
            ["provider", "error_code", "retryable"],
            registry=self.registry,
        )

        self._counters["cache_hits"] = Counter(
            f"{ns}_cache_hits_total",
            "Semantic cache hits",
            ["capability"],
            registry=self.registry,
        )
        self._counters["cache_misses"] = Counter(
            f"{ns}_cache_misses_total",
            "Semantic cache misses",
            ["capability"],
            registry=self.registry,
        )
        self._gauges["cache_size"] = Gauge(
            f"{ns}_cache_entries",
            "Current number of semantic cache entries",
            registry=self.registry,
        )

        self._counters["cost_cents_total"] = Counter(
            f"{ns}_cost_cents_total",
            "Accumulated inference cost in cents",
            ["model", "capability"],
            registry=self.registry,
        )
        self._counters["tokens_processed"] = Counter(
            f"{ns}_tokens_processed_total",
            "Tokens processed",
            ["model", "direction"],
            registry=self.registry,
        )
        self._counters["budget_alerts"] = Counter(
            f"{ns}_budget_alerts_total",
            "Budget alerts raised",
            ["severity", "period"],
            registry=self.registry,
        )

        self._counters["rate_limit_exceeded"] = Counter(
            f"{ns}_rate_limit_exceeded_total",
            "Requests rejected by the rate limiter",
            ["limit"],
            registry=self.registry,
        )

        self._counters["experiment_assignments"] = Counter(
            f"{ns}_experiment_assignments_total",
            "Experiment variant assignments",
            ["experiment_id", "variant_id"],
            registry=self.registry,
        )
        self._counters["events_flushed"] = Counter(
            f"{ns}_events_flushed_total",
            "Events delivered to the event sink",
            registry=self.registry,
        )
        self._counters["event_flush_failures"] = Counter(
            f"{ns}_event_flush_failures_total",
            "Failed event sink flushes",
            registry=self.registry,
        )

    def increment_counter(
        self,
        name: str,
        value: float = 1,
        labels: dict[str, str] | None = None,
    ):
        """Increment a counter metric."""
        if name not in self._counters:
            return
        if labels:
            self._counters[name].labels(**labels).inc(value)
        else:
            self._counters[name].inc(value)
        self._totals[name] = self._totals.get(name, 0.0) + value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None):
        """Set a gauge metric value."""
        if name not in self._gauges:
            return
        if labels:
            self._gauges[name].labels(**labels).set(value)
        else:
            self._gauges[name].set(value)
        self._gauge_values[name] = value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        """Record a histogram observation."""
        if name not in self._histograms:
            return
        if labels:
            self._histograms[name].labels(**labels).observe(value)
        else:
            self._histograms[name].observe(value)

    def get_total(self, name: str) -> float:
        """Label-agnostic running total for a counter."""
        return self._totals.get(name, 0.0)

    def snapshot(self) -> MetricSnapshot:
        return MetricSnapshot(counters=dict(self._totals), gauges=dict(self._gauge_values))

    def export(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)

    def to_dict(self) -> dict[str, Any]:
        snap = self.snapshot()
        return {"counters": snap.counters, "gauges": snap.gauges}
