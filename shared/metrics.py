"""
Shared metrics configuration for the page cache.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager


class MetricsCollector:
    """Centralized metrics collector.

    Metrics are only exported when a registry is supplied; without one the
    collector still counts, which keeps independent instances side by side in
    tests.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._setup_page_cache_metrics()

    def _setup_page_cache_metrics(self):
        """Set up page cache metrics."""
        self._metrics["page_cache_requests_total"] = Counter(
            "page_cache_requests_total",
            "Total requests served through the page cache",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["page_cache_store_errors_total"] = Counter(
            "page_cache_store_errors_total",
            "Total recovered cache store failures",
            ["operation"],
            registry=self.registry
        )

        self._metrics["page_cache_invalidations_total"] = Counter(
            "page_cache_invalidations_total",
            "Total invalidation calls",
            ["kind"],
            registry=self.registry
        )

        self._metrics["page_cache_invalidated_entries_total"] = Counter(
            "page_cache_invalidated_entries_total",
            "Total cache entries removed by invalidation",
            ["kind"],
            registry=self.registry
        )

        self._metrics["page_cache_handler_duration_seconds"] = Histogram(
            "page_cache_handler_duration_seconds",
            "Duration of the wrapped handler on cache misses",
            registry=self.registry
        )

        self._metrics["page_cache_fragments_rendered_total"] = Counter(
            "page_cache_fragments_rendered_total",
            "Total dynamic fragments rendered",
            registry=self.registry
        )

        self._metrics["page_cache_pending_writes"] = Gauge(
            "page_cache_pending_writes",
            "Store writes still in flight",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            self.observe_histogram(operation_name, duration, **labels)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
