"""
Metrics Collection with Prometheus.

Exposes ledger and HTTP metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Histogram, Info

from creditguard.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class GuardMetrics:
    """
    Centralized metrics for the Credit Ledger Guard.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Balance checks, reservations, finalizations, releases by outcome
    - Reserved and settled amounts
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "creditguard_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "creditguard_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "creditguard_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Guard Metrics
        # ====================================================================
        self.guard_operations_total = Counter(
            "creditguard_operations_total",
            "Guard operations by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.guard_operation_duration_seconds = Histogram(
            "creditguard_operation_duration_seconds",
            "Guard operation duration in seconds (includes lock wait)",
            [MetricLabels.OPERATION],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.reserved_amount_minor = Histogram(
            "creditguard_reserved_amount_minor",
            "Reserved amounts in minor units",
            buckets=(5, 15, 30, 60, 150, 300, 600, 1500),
        )

        self.settled_amount_minor = Histogram(
            "creditguard_settled_amount_minor",
            "Actual call costs in minor units",
            buckets=(0, 5, 15, 30, 60, 150, 300, 600, 1500),
        )

        self.shortfall_minor_total = Counter(
            "creditguard_shortfall_minor_total",
            "Uncollected call cost in minor units",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "creditguard_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_operation(self, operation: str, outcome: str, duration: float) -> None:
        """Record a guard operation outcome (ok, replayed, bypassed, or an error kind)."""
        self.guard_operations_total.labels(operation=operation, outcome=outcome).inc()
        self.guard_operation_duration_seconds.labels(operation=operation).observe(duration)

    def record_reservation(self, amount_minor: int) -> None:
        """Record a newly reserved amount."""
        self.reserved_amount_minor.observe(amount_minor)

    def record_settlement(self, actual_cost_minor: int, shortfall_minor: int) -> None:
        """Record a settled call cost."""
        self.settled_amount_minor.observe(actual_cost_minor)
        if shortfall_minor:
            self.shortfall_minor_total.inc(shortfall_minor)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GuardMetrics()
