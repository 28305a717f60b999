"""
Prometheus metrics for the engine services.

Every metric name is prefixed with the owning service (``gateway_...``) so the
three services can share the default registry when they run in one process.
"""

import threading
from typing import Any, Dict, Optional, Sequence, Tuple, Type

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, Info

MetricSpec = Tuple[Type, str, Sequence[str]]

COMMON_METRICS: Dict[str, MetricSpec] = {
    "http_requests_total": (Counter, "Total HTTP requests", ("method", "endpoint", "status_code")),
    "http_request_duration_seconds": (Histogram, "HTTP request duration in seconds", ("method", "endpoint")),
    "health_check_total": (Counter, "Total health check requests", ("status",)),
    "errors_total": (Counter, "Error responses by code", ("code",)),
}

SERVICE_METRICS: Dict[str, Dict[str, MetricSpec]] = {
    "gateway": {
        "access_decisions_total": (Counter, "Access decisions by outcome", ("auth_method", "outcome")),
        "access_decision_duration_seconds": (Histogram, "Access decision duration in seconds", ()),
        "rate_limit_rejections_total": (Counter, "API-key requests rejected by the rate limiter", ("tier",)),
    },
    "auth": {
        "token_operations_total": (Counter, "Token issuance, rotation and revocation", ("operation", "status")),
    },
    "entitlements": {
        "cleanup_actions_total": (Counter, "Downgrade cleanup actions taken", ("resource", "action")),
        "cleanup_failures_total": (Counter, "Downgrade cleanup resource classes that failed", ("resource",)),
        "quota_checks_total": (Counter, "Resource quota checks", ("resource", "decision")),
    },
}


class MetricsCollector:
    """The metrics one service exports."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}

        info = Info(f"{service_name}_service", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": "1.0.0"})

        specs = dict(COMMON_METRICS)
        specs.update(SERVICE_METRICS.get(service_name, {}))
        for key, (kind, documentation, labels) in specs.items():
            self._metrics[key] = kind(
                f"{service_name}_{key}", documentation, list(labels), registry=self.registry
            )

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self._metrics["http_requests_total"].labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(method=method, endpoint=endpoint).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, code: str):
        self._metrics["errors_total"].labels(code=code).inc()

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter this service declares; unknown names are ignored."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            metric.labels(**labels).inc(amount)


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Collectors on the default registry are cached per service.

    Prometheus refuses to register the same metric name twice, and the engine
    and each service's HTTP layer both ask for the same collector.
    """
    if registry is not None:
        return MetricsCollector(service_name, registry)

    with _collectors_lock:
        if service_name not in _collectors:
            _collectors[service_name] = MetricsCollector(service_name)
        return _collectors[service_name]
