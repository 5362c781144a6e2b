"""
Metrics Collection with Prometheus.

Exposes ledger, webhook and provider metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from credit_engine.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"
    PROVIDER = "provider"


class CreditMetrics:
    """
    Centralized metrics for the credit engine.

    Covers:
    - HTTP requests (rate, duration)
    - Ledger debits and credits
    - Webhook outcomes
    - Provider dispatches and refunds
    - Rate limit rejections
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("credit_engine_service", "Service information")
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
            "credit_engine_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "credit_engine_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "credit_engine_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.debits_total = Counter(
            "credit_engine_debits_total",
            "Total debit attempts",
            ["success", MetricLabels.ERROR_TYPE],
        )

        self.debit_amount = Histogram(
            "credit_engine_debit_amount_credits",
            "Debited credits per transaction",
            buckets=(1, 2, 4, 6, 8, 12, 16, 20, 50),
        )

        self.credits_added_total = Counter(
            "credit_engine_credits_added_total",
            "Total credit transactions",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.credits_added_amount = Counter(
            "credit_engine_credits_added_amount_total",
            "Total credits added",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.credits_expired_total = Counter(
            "credit_engine_credits_expired_total",
            "Total subscription credits expired at renewal or cancellation",
        )

        self.accounts_created_total = Counter(
            "credit_engine_accounts_created_total",
            "Total accounts created",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "credit_engine_webhook_events_total",
            "Webhook deliveries by event type and outcome",
            ["event_type", "outcome"],
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.provider_dispatch_total = Counter(
            "credit_engine_provider_dispatch_total",
            "Provider dispatch attempts",
            [MetricLabels.PROVIDER, "outcome"],
        )

        self.provider_dispatch_duration_seconds = Histogram(
            "credit_engine_provider_dispatch_duration_seconds",
            "Provider call duration in seconds",
            [MetricLabels.PROVIDER],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        self.provider_exhausted_total = Counter(
            "credit_engine_provider_exhausted_total",
            "Requests refunded because every provider failed",
        )

        # ====================================================================
        # Rate Limit Metrics
        # ====================================================================
        self.rate_limit_rejections_total = Counter(
            "credit_engine_rate_limit_rejections_total",
            "Requests rejected by rate or batch limits",
            ["limit_type"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "credit_engine_errors_total",
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

    def record_debit(self, success: bool, amount: int, error_type: str | None = None) -> None:
        """Record a debit attempt."""
        self.debits_total.labels(success=str(success), error_type=error_type or "none").inc()
        if success:
            self.debit_amount.observe(amount)

    def record_credit(self, transaction_type: str, amount: int) -> None:
        """Record a credit transaction."""
        self.credits_added_total.labels(transaction_type=transaction_type).inc()
        self.credits_added_amount.labels(transaction_type=transaction_type).inc(amount)

    def record_expiration(self, amount: int) -> None:
        """Record expired subscription credits."""
        if amount > 0:
            self.credits_expired_total.inc(amount)

    def record_webhook(self, event_type: str, outcome: str) -> None:
        """Record a webhook delivery outcome."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_provider_dispatch(self, provider: str, outcome: str, duration: float) -> None:
        """Record a provider dispatch attempt."""
        self.provider_dispatch_total.labels(provider=provider, outcome=outcome).inc()
        self.provider_dispatch_duration_seconds.labels(provider=provider).observe(duration)

    def record_rate_limit_rejection(self, limit_type: str) -> None:
        """Record a rejected request."""
        self.rate_limit_rejections_total.labels(limit_type=limit_type).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CreditMetrics()
