"""
Prometheus metrics for the scheduling engine.

Service timings come from the @measure_operation decorator; domain counters
cover resource locks, conflicts and credit ledger movements.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry keeps test processes free of default-registry collisions
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "studioops_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "studioops_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "studioops_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

resource_lock_total = Counter(
    "studioops_resource_lock_total",
    "Resource lock attempts by outcome",
    ["resource_type", "action", "outcome"],
    registry=REGISTRY,
)

scheduling_conflicts_total = Counter(
    "studioops_scheduling_conflicts_total",
    "Rejected placements by blocking resource",
    ["resource_type", "reason"],
    registry=REGISTRY,
)

credit_operations_total = Counter(
    "studioops_credit_operations_total",
    "Credit ledger operations",
    ["operation", "outcome"],  # reserve|release|consume|adjust ; ok|noop|rejected
    registry=REGISTRY,
)

series_occurrences_total = Counter(
    "studioops_series_occurrences_total",
    "Recurrence occurrences by result",
    ["result"],  # created | skipped
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

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
            service: Service name (e.g., 'BookingService')
            operation: Operation name (e.g., 'book_session')
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
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_resource_lock(resource_type: str, action: str, outcome: str) -> None:
        resource_lock_total.labels(
            resource_type=resource_type, action=action, outcome=outcome
        ).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_conflict(resource_type: str, reason: str) -> None:
        scheduling_conflicts_total.labels(resource_type=resource_type, reason=reason).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_credit_operation(operation: str, outcome: str) -> None:
        credit_operations_total.labels(operation=operation, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_series_occurrences(created: int, skipped: int) -> None:
        if created:
            series_occurrences_total.labels(result="created").inc(created)
        if skipped:
            series_occurrences_total.labels(result="skipped").inc(skipped)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        now = monotonic()
        with PrometheusMetrics._cache_lock:
            payload = PrometheusMetrics._cache_payload
            ts = PrometheusMetrics._cache_ts
            if payload is None or ts is None or (now - ts) > PrometheusMetrics._cache_ttl_seconds:
                PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
                PrometheusMetrics._cache_ts = now
                payload = PrometheusMetrics._cache_payload
        return cast(bytes, payload)

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
