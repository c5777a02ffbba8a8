"""
Provider client contract and shared resilience helpers.

Implements:
- Provider error classification for retry logic
- Circuit breaker pattern
- Normalized session, verification, transfer and webhook shapes
"""
import inspect
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

import structlog

from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Base exception for provider API errors."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        provider: str = "",
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            error_type: Classification of error
            provider: Provider name
            original_error: Underlying exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Whether retrying the same call may succeed."""
        return self.error_type in (ProviderErrorType.TRANSIENT, ProviderErrorType.RATE_LIMIT)


class WebhookSignatureError(Exception):
    """Raised when a webhook payload fails signature verification."""

    pass


def is_retryable_provider_error(error: BaseException) -> bool:
    """Retry predicate for tenacity."""
    return isinstance(error, ProviderError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider the breaker protects
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    @property
    def is_open(self) -> bool:
        """Open and not yet due for a trial call."""
        if self.state != "open":
            return False
        return not (
            self.last_failure_time and time.time() - self.last_failure_time > self.timeout
        )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)

    async def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute a function or coroutine function with circuit breaker protection.

        Args:
            func: Callable to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.name)
            else:
                raise ProviderError(
                    "Circuit breaker is open",
                    ProviderErrorType.TRANSIENT,
                    provider=self.name,
                )

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except ProviderError as e:
            # Declined requests say nothing about provider health.
            if e.error_type != ProviderErrorType.PERMANENT:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.name,
                failure_count=self.failure_count,
            )


@dataclass
class CheckoutSession:
    """Provider handle for a started checkout."""

    reference: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class VerificationResult:
    """Authoritative payment status reported by a provider."""

    reference: str
    status: str  # successful, failed, pending
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class TransferResult:
    """Result of initiating a payout transfer."""

    payout_id: str
    status: str  # pending, completed, failed


@dataclass
class NormalizedEvent:
    """Provider webhook normalized to the fields the ingestor needs."""

    provider: str
    event_id: str
    event_type: str
    kind: str  # payment, dispute, ignored
    reference: Optional[str] = None
    status: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProviderClient(ABC):
    """Contract every payment provider client implements."""

    name: str = ""
    payment_methods: FrozenSet[str] = frozenset()
    currencies: FrozenSet[str] = frozenset()
    supports_payouts: bool = False
    circuit_breaker: Optional[CircuitBreaker] = None

    def supports(self, method: str, currency: str) -> bool:
        """Whether this provider can take ``method`` payments in ``currency``."""
        return method in self.payment_methods and currency.upper() in self.currencies

    @property
    def circuit_open(self) -> bool:
        """Whether calls to this provider are currently refused by its breaker."""
        return self.circuit_breaker is not None and self.circuit_breaker.is_open

    @abstractmethod
    async def create_session(
        self,
        amount_minor: int,
        currency: str,
        payer_email: str,
        reference: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        """Start a checkout session with the provider."""

    @abstractmethod
    async def verify(self, reference: str) -> VerificationResult:
        """Fetch the authoritative status of a payment."""

    async def initiate_transfer(
        self,
        amount_minor: int,
        currency: str,
        method: str,
        account_details: Dict[str, Any],
        reference: str,
    ) -> TransferResult:
        """Send funds to a creator. Only payout-capable providers override this."""
        raise ProviderError(
            f"{self.name} does not support payouts",
            ProviderErrorType.PERMANENT,
            provider=self.name,
        )

    @abstractmethod
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        """Verify the webhook signature and normalize the payload."""

    async def close(self) -> None:
        """Release client resources."""
        return None
