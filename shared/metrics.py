"""
Prometheus metrics for the content cache service.

Metrics are declared in tables and registered on a per-collector registry, so
tests and embedded instances never collide on the process-global one.
Updates to a metric name that is not declared are ignored.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Any, Dict, Optional, Sequence, Tuple, Type

MetricSpec = Tuple[Type, str, str, Sequence[str]]

HTTP_METRICS: Sequence[MetricSpec] = (
    (Counter, "http_requests_total", "Total HTTP requests", ("method", "endpoint", "status_code")),
    (Histogram, "http_request_duration_seconds", "HTTP request duration in seconds", ("method", "endpoint")),
    (Counter, "health_check_total", "Health check results", ("status",)),
    (Counter, "errors_total", "Errors by code", ("error_type", "service")),
)

CONTENT_METRICS: Sequence[MetricSpec] = (
    (Counter, "cache_hits_total", "Reads answered from a cache tier", ("kind",)),
    (Counter, "cache_misses_total", "Reads that had to go to the remote", ("kind",)),
    (Counter, "cache_stale_served_total", "Stale entries served because the remote could not be used", ("kind",)),
    (Counter, "remote_requests_total", "Remote store requests by interface and outcome", ("interface", "outcome")),
    (Gauge, "quota_remaining", "Last known remaining remote quota", ("interface",)),
    (Gauge, "circuit_breaker_open", "1 while the breaker guarding a remote is open", ("name",)),
    (Counter, "cache_warm_total", "Warmed content roots by result", ("result",)),
    (Histogram, "cache_warm_duration_seconds", "Duration of a full warmup", ()),
    (Counter, "cache_refresh_total", "Periodic refresh outcomes per root", ("result",)),
    (Counter, "cache_invalidations_total", "Invalidated cache entries", ("source",)),
)


class MetricsCollector:
    """Registry plus thin update helpers used across the service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}

        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": "1.0.0"})

        self._register(HTTP_METRICS)
        if service_name == "content":
            self._register(CONTENT_METRICS)

    def _register(self, specs: Sequence[MetricSpec]) -> None:
        for metric_type, name, documentation, labels in specs:
            self._metrics[name] = metric_type(name, documentation, list(labels), registry=self.registry)

    def _labelled(self, metric_name: str, labels: Dict[str, Any]):
        metric = self._metrics.get(metric_name)
        if metric is None:
            return None
        return metric.labels(**{key: str(value) for key, value in labels.items()}) if labels else metric

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self.increment_counter("http_requests_total", method=method, endpoint=endpoint, status_code=status_code)
        self.observe_histogram("http_request_duration_seconds", duration, method=method, endpoint=endpoint)

    def record_health_check(self, status: str):
        self.increment_counter("health_check_total", status=status)

    def record_error(self, error_type: str, service: Optional[str] = None):
        self.increment_counter("errors_total", error_type=error_type, service=service or self.service_name)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        metric = self._labelled(metric_name, labels)
        if metric is not None:
            metric.inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        metric = self._labelled(metric_name, labels)
        if metric is not None:
            metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        metric = self._labelled(metric_name, labels)
        if metric is not None:
            metric.observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
