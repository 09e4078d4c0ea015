"""
Prometheus metrics for webhook reconciliation monitoring.

Tracks:
- Webhook deliveries received and their processing outcome
- Webhook processing duration
- Signature verification results
- Aggregate increment failures (need manual reconciliation)
- Recurring billing outcomes
- Notification deliveries per channel
"""
from prometheus_client import Counter, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook deliveries received",
    ["provider"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook deliveries processed",
    ["provider", "outcome"],  # applied, duplicate, not_found, ignored, error, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_checks_total = Counter(
    "webhook_signature_checks_total",
    "Webhook signature verification results",
    ["provider", "result"],  # authentic, inauthentic, unconfigured
)

# Donation metrics
donation_transitions_total = Counter(
    "donation_transitions_total",
    "Donation status transitions performed",
    ["target_status"],
)

aggregate_update_failures_total = Counter(
    "aggregate_update_failures_total",
    "Aggregate increments that failed or matched no row",
    ["aggregate"],  # donor, campaign, fund
)

# Subscription metrics
subscription_billing_events_total = Counter(
    "subscription_billing_events_total",
    "Recurring billing callbacks by outcome",
    ["outcome"],  # advanced, duplicate, failed_recorded, not_found
)

# Notification metrics
notification_deliveries_total = Counter(
    "notification_deliveries_total",
    "Notification delivery attempts",
    ["channel", "status"],  # sent, failed, skipped
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook delivery processing."""
        webhook_events_received_total.labels(provider=provider).inc()
        webhook_events_processed_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_signature_check(provider: str, result: str) -> None:
        """Record a signature verification result."""
        webhook_signature_checks_total.labels(provider=provider, result=result).inc()

    @staticmethod
    def record_transition(target_status: str) -> None:
        """Record a genuine donation transition."""
        donation_transitions_total.labels(target_status=target_status).inc()

    @staticmethod
    def record_aggregate_failure(aggregate: str) -> None:
        """Record an aggregate increment that needs manual reconciliation."""
        aggregate_update_failures_total.labels(aggregate=aggregate).inc()

    @staticmethod
    def record_billing_event(outcome: str) -> None:
        """Record a recurring billing outcome."""
        subscription_billing_events_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_notification(channel: str, status: str) -> None:
        """Record a notification delivery attempt."""
        notification_deliveries_total.labels(channel=channel, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
