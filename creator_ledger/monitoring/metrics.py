"""
Prometheus metrics for the creator ledger.

Tracks:
- Checkout sessions by provider and outcome
- Provider API calls and errors
- Webhook events
- Wallet reservations and payout transitions
- Dunning attempts and chargebacks
"""
from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_sessions_total = Counter(
    "checkout_sessions_total",
    "Total checkout sessions started",
    ["provider", "payment_type", "status"],
)

checkout_amount_usd_cents = Histogram(
    "checkout_amount_usd_cents",
    "Checkout amounts normalized to USD cents",
    buckets=(100, 500, 1000, 2500, 5000, 10000, 50000, 100000),
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "kind", "status"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
wallet_reservations_total = Counter(
    "wallet_reservations_total",
    "Wallet payout reservations",
    ["status"],  # reserved, insufficient_balance, frozen
)

payout_transitions_total = Counter(
    "payout_transitions_total",
    "Payout request status transitions",
    ["status"],
)

# Recovery metrics
dunning_attempts_total = Counter(
    "dunning_attempts_total",
    "Dunning retry attempts",
    ["status"],  # success, failed
)

subscriptions_cancelled_total = Counter(
    "subscriptions_cancelled_total",
    "Subscriptions cancelled",
    ["reason"],
)

chargebacks_total = Counter(
    "chargebacks_total",
    "Chargeback events",
    ["provider", "status"],  # open, won, lost
)

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(
        provider: str, payment_type: str, status: str, amount_usd_cents: int = 0
    ) -> None:
        """Record a checkout session outcome."""
        checkout_sessions_total.labels(
            provider=provider, payment_type=payment_type, status=status
        ).inc()
        if amount_usd_cents > 0:
            checkout_amount_usd_cents.observe(amount_usd_cents)

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_error(provider: str, error_type: str) -> None:
        """Record a provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, kind: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(provider=provider, kind=kind, status=status).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_wallet_reservation(status: str) -> None:
        """Record a payout reservation attempt."""
        wallet_reservations_total.labels(status=status).inc()

    @staticmethod
    def record_payout_transition(status: str) -> None:
        """Record a payout request status change."""
        payout_transitions_total.labels(status=status).inc()

    @staticmethod
    def record_dunning_attempt(status: str) -> None:
        """Record a dunning attempt outcome."""
        dunning_attempts_total.labels(status=status).inc()

    @staticmethod
    def record_subscription_cancelled(reason: str) -> None:
        """Record a subscription cancellation."""
        subscriptions_cancelled_total.labels(reason=reason).inc()

    @staticmethod
    def record_chargeback(provider: str, status: str) -> None:
        """Record a chargeback lifecycle event."""
        chargebacks_total.labels(provider=provider, status=status).inc()

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        """Record distributed lock acquisition."""
        distributed_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
