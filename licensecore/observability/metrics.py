"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from licensecore.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    STAGE = "stage"
    ERROR_TYPE = "error_type"


class LicensingMetrics:
    """
    Centralized metrics for the licensing core.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Escrow transitions
    - Settlements (rate, amount)
    - License operations (mint, use, transfer, burn)
    - Purchases (outcome, failure stage, compensation)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "licensing_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
                "backend": settings.backend,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "licensing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "licensing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "licensing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Escrow Metrics
        # ====================================================================
        self.escrow_transitions_total = Counter(
            "licensing_escrow_transitions_total",
            "Escrow state transitions",
            ["to_status"],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.payments_total = Counter(
            "licensing_payments_total",
            "Total settlement attempts",
            ["kind", "success"],
        )

        self.payment_amount_minor = Histogram(
            "licensing_payment_amount_minor",
            "Settled amounts in minor units",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 500000),
        )

        # ====================================================================
        # License Metrics
        # ====================================================================
        self.license_operations_total = Counter(
            "licensing_license_operations_total",
            "License registry operations",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchases_total = Counter(
            "licensing_purchases_total",
            "Purchase orchestrations by outcome and failure stage",
            [MetricLabels.OUTCOME, MetricLabels.STAGE],
        )

        self.purchase_duration_seconds = Histogram(
            "licensing_purchase_duration_seconds",
            "Purchase orchestration duration in seconds",
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.compensations_total = Counter(
            "licensing_compensations_total",
            "Escrow refunds issued to compensate failed purchases",
            ["success"],
        )

        self.backend_timeouts_total = Counter(
            "licensing_backend_timeouts_total",
            "Backend calls that exceeded their timeout",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "licensing_errors_total",
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

    def record_escrow_transition(self, to_status: str) -> None:
        """Record an escrow entering a status."""
        self.escrow_transitions_total.labels(to_status=to_status).inc()

    def record_payment(self, kind: str, success: bool, amount_minor: int = 0) -> None:
        """Record settlement metrics."""
        self.payments_total.labels(kind=kind, success=str(success)).inc()
        if success:
            self.payment_amount_minor.observe(amount_minor)

    def record_license_operation(self, operation: str, outcome: str) -> None:
        """Record a license registry operation."""
        self.license_operations_total.labels(operation=operation, outcome=outcome).inc()

    def record_purchase(self, outcome: str, stage: str | None, duration: float) -> None:
        """Record purchase orchestration metrics."""
        self.purchases_total.labels(outcome=outcome, stage=stage or "none").inc()
        self.purchase_duration_seconds.observe(duration)

    def record_compensation(self, success: bool) -> None:
        """Record an escrow refund compensation."""
        self.compensations_total.labels(success=str(success)).inc()

    def record_backend_timeout(self, operation: str) -> None:
        """Record a backend call timeout."""
        self.backend_timeouts_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LicensingMetrics()
