"""
Shared metrics configuration for the Institutional Trust Bridge.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Every collector owns its own ``CollectorRegistry`` unless one is passed in,
    so several service instances (one per test, typically) can coexist in a
    single process without duplicate-timeseries errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
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

        if self.service_name == "institutions":
            self._setup_institution_metrics()

    def _setup_institution_metrics(self):
        """Set up trust bridge metrics."""
        self._metrics["provisioning_tokens_issued_total"] = Counter(
            "provisioning_tokens_issued_total",
            "Total provisioning tokens issued",
            ["token_type"],
            registry=self.registry
        )

        self._metrics["provisioning_token_verifications_total"] = Counter(
            "provisioning_token_verifications_total",
            "Total provisioning token verifications",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["callback_verifications_total"] = Counter(
            "callback_verifications_total",
            "Total onboarding callback verifications",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["backend_resolutions_total"] = Counter(
            "backend_resolutions_total",
            "Total institutional backend resolutions",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["onboarding_sessions_total"] = Counter(
            "onboarding_sessions_total",
            "Total onboarding sessions initiated",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["onboarding_results_stored_total"] = Counter(
            "onboarding_results_stored_total",
            "Total onboarding results stored",
            ["status"],
            registry=self.registry
        )

        self._metrics["registrations_total"] = Counter(
            "registrations_total",
            "Total institution registrations",
            ["kind", "outcome"],
            registry=self.registry
        )

    def render_latest(self) -> bytes:
        """Render this collector's registry in the Prometheus text format."""
        return generate_latest(self.registry)

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

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def sample_value(self, metric_name: str, **labels) -> float:
        """Read back the current value of a counter sample (0.0 when never incremented)."""
        value = self.registry.get_sample_value(metric_name, labels)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
