"""
Shared metrics configuration for the Access Review platform.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns a registry so services can be built repeatedly
        # in one process without duplicate time series.
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
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

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        if self.service_name == "access_review":
            self._setup_access_review_metrics()

    def _setup_access_review_metrics(self):
        """Set up access-review specific metrics."""
        self._metrics["reconciliation_rows_total"] = Counter(
            "reconciliation_rows_total",
            "Account rows processed by reconciliation",
            ["app_id", "outcome"],
            registry=self.registry
        )

        self._metrics["reconciliation_duration_seconds"] = Histogram(
            "reconciliation_duration_seconds",
            "Reconciliation run duration in seconds",
            registry=self.registry
        )

        self._metrics["sod_violations_total"] = Counter(
            "sod_violations_total",
            "SoD policy violations detected",
            ["stage"],
            registry=self.registry
        )

        self._metrics["review_items_created_total"] = Counter(
            "review_items_created_total",
            "Review items created at campaign launch",
            registry=self.registry
        )

        self._metrics["review_decisions_total"] = Counter(
            "review_decisions_total",
            "Review item decisions applied",
            ["decision"],
            registry=self.registry
        )

        self._metrics["cycle_transitions_total"] = Counter(
            "cycle_transitions_total",
            "Review cycle status transitions",
            ["from_status", "to_status"],
            registry=self.registry
        )

        self._metrics["concurrency_conflicts_total"] = Counter(
            "concurrency_conflicts_total",
            "Conditional writes rejected on token mismatch",
            ["resource"],
            registry=self.registry
        )

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

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc(amount)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
