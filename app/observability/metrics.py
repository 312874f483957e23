"""
Metrics Collection with Prometheus.

Exposes gateway and security metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ACTION_TYPE = "action_type"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the AFFCD gateway.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Security gates (signatures, rate-limit decisions, security events)
    - Code validation and event ingestion
    - Commission calculations
    - Outbound calls (domain verification, webhooks)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "affcd_gateway_service",
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
            "affcd_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "affcd_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "affcd_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Security Gate Metrics
        # ====================================================================
        self.signature_checks_total = Counter(
            "affcd_signature_checks_total",
            "Signature and timestamp checks",
            ["result"],
        )

        self.rate_limit_decisions_total = Counter(
            "affcd_rate_limit_decisions_total",
            "Rate limiter decisions",
            [MetricLabels.ACTION_TYPE, "allowed"],
        )

        self.security_events_total = Counter(
            "affcd_security_events_total",
            "Security audit log entries",
            [MetricLabels.EVENT_TYPE, "severity"],
        )

        # ====================================================================
        # Code & Ingestion Metrics
        # ====================================================================
        self.code_validations_total = Counter(
            "affcd_code_validations_total",
            "Vanity/affiliate code validations",
            ["valid", "reason"],
        )

        self.events_ingested_total = Counter(
            "affcd_events_ingested_total",
            "Usage events persisted",
            [MetricLabels.EVENT_TYPE, "status"],
        )

        self.batch_size = Histogram(
            "affcd_batch_size",
            "Events per batch request",
            buckets=(1, 5, 10, 25, 50, 100),
        )

        # ====================================================================
        # Commission Metrics
        # ====================================================================
        self.commission_calculations_total = Counter(
            "affcd_commission_calculations_total",
            "Commission calculations",
            ["method", "success"],
        )

        self.commission_amount = Histogram(
            "affcd_commission_amount",
            "Calculated commission amounts",
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
        )

        # ====================================================================
        # Outbound Call Metrics
        # ====================================================================
        self.domain_verifications_total = Counter(
            "affcd_domain_verifications_total",
            "Outbound domain verifications",
            ["success"],
        )

        self.domains_suspended_total = Counter(
            "affcd_domains_suspended_total",
            "Domains auto-suspended after repeated verification failures",
        )

        self.webhook_deliveries_total = Counter(
            "affcd_webhook_deliveries_total",
            "Outbound webhook deliveries",
            [MetricLabels.EVENT_TYPE, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "affcd_errors_total",
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

    def record_signature_check(self, result: str) -> None:
        self.signature_checks_total.labels(result=result).inc()

    def record_rate_limit(self, action_type: str, allowed: bool) -> None:
        self.rate_limit_decisions_total.labels(
            action_type=action_type, allowed=str(allowed)
        ).inc()

    def record_security_event(self, event_type: str, severity: str) -> None:
        self.security_events_total.labels(event_type=event_type, severity=severity).inc()

    def record_code_validation(self, valid: bool, reason: str | None) -> None:
        self.code_validations_total.labels(valid=str(valid), reason=reason or "none").inc()

    def record_event_ingested(self, event_type: str, status: str) -> None:
        self.events_ingested_total.labels(event_type=event_type, status=status).inc()

    def record_commission(self, method: str, success: bool, amount: float | None = None) -> None:
        """Record commission calculation metrics."""
        self.commission_calculations_total.labels(method=method, success=str(success)).inc()
        if success and amount is not None:
            self.commission_amount.observe(amount)

    def record_verification(self, success: bool) -> None:
        self.domain_verifications_total.labels(success=str(success)).inc()

    def record_webhook(self, event_type: str, success: bool) -> None:
        self.webhook_deliveries_total.labels(event_type=event_type, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()
