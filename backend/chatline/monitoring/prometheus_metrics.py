"""
Prometheus metrics for Chatline.

Service timings come from the @measure_operation decorator; the realtime hub
reports connection counts, inbound events and fan-out outcomes.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Custom registry so tests and multiple apps in one process don't collide
REGISTRY = CollectorRegistry()

websocket_connections = Gauge(
    "chatline_websocket_connections",
    "Open realtime connections",
    registry=REGISTRY,
)

online_users = Gauge(
    "chatline_online_users",
    "Distinct users with at least one open connection",
    registry=REGISTRY,
)

socket_events_total = Counter(
    "chatline_socket_events_total",
    "Inbound socket events by name and outcome",
    ["event", "status"],
    registry=REGISTRY,
)

fanout_deliveries_total = Counter(
    "chatline_fanout_deliveries_total",
    "Per-recipient outcomes of notification and broadcast fan-out",
    ["kind", "status"],
    registry=REGISTRY,
)

outbound_frames_dropped_total = Counter(
    "chatline_outbound_frames_dropped_total",
    "Frames dropped because a connection's outbound queue was full or closed",
    registry=REGISTRY,
)

service_operation_duration_seconds = Histogram(
    "chatline_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "chatline_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "chatline_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'MessageDeliveryEngine')
            operation: Operation/method name (e.g., 'send_message')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def set_connection_counts(connections: int, users: int) -> None:
        websocket_connections.set(connections)
        online_users.set(users)

    @staticmethod
    def record_socket_event(event: str, status: str) -> None:
        socket_events_total.labels(event=event, status=status).inc()

    @staticmethod
    def record_fanout(kind: str, status: str, count: int = 1) -> None:
        """kind is 'notification' or 'broadcast'; status is 'ok' or 'failed'."""
        if count > 0:
            fanout_deliveries_total.labels(kind=kind, status=status).inc(count)

    @staticmethod
    def record_dropped_frame() -> None:
        outbound_frames_dropped_total.inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Metrics data in Prometheus text format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
