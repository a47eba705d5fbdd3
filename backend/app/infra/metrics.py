import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.dispatch_operations = None
            self.dispatch_warnings = None
            self.outbox_queue_depth = None
            self.http_5xx = None
            self.http_latency = None
            return

        self.dispatch_operations = Counter(
            "dispatch_operations_total",
            "Command center operations by outcome.",
            ["operation", "outcome"],
            registry=self.registry,
        )
        self.dispatch_warnings = Gauge(
            "dispatch_outstanding_warnings",
            "Outstanding dispatch warnings seen on the last status read, by type.",
            ["type"],
            registry=self.registry,
        )
        self.outbox_queue_depth = Gauge(
            "outbox_queue_depth",
            "Outbox events by status.",
            ["status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP 5xx responses by method and route.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency by method, route, and status class.",
            ["method", "path", "status_class"],
            registry=self.registry,
        )

    def record_dispatch_operation(self, operation: str, outcome: str) -> None:
        if not self.enabled or self.dispatch_operations is None:
            return
        self.dispatch_operations.labels(operation=operation, outcome=outcome).inc()

    def set_dispatch_warnings(self, counts: dict[str, int]) -> None:
        if not self.enabled or self.dispatch_warnings is None:
            return
        for warning_type, count in counts.items():
            self.dispatch_warnings.labels(type=warning_type).set(count)

    def set_outbox_depth(self, status: str, count: int) -> None:
        if not self.enabled or self.outbox_queue_depth is None:
            return
        self.outbox_queue_depth.labels(status=status).set(count)

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(duration_seconds)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
