"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent PaymentIntent creation keyed on the payment reference
- Webhook signature verification and normalization
"""
import asyncio
import time
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from creator_ledger.config import Settings, get_settings
from creator_ledger.core.currency import SUPPORTED_CURRENCIES
from creator_ledger.integrations.base import (
    CheckoutSession,
    CircuitBreaker,
    NormalizedEvent,
    PaymentProviderClient,
    ProviderError,
    ProviderErrorType,
    VerificationResult,
    WebhookSignatureError,
    is_retryable_provider_error,
)
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_PAYMENT_EVENTS = {
    "payment_intent.succeeded": "successful",
    "payment_intent.payment_failed": "failed",
}
_DISPUTE_EVENTS = {"charge.dispute.created", "chargeback.dispute.created"}


class StripeClient(PaymentProviderClient):
    """Card payments through Stripe PaymentIntents."""

    name = "STRIPE"
    payment_methods = frozenset({"card"})
    currencies = SUPPORTED_CURRENCIES
    supports_payouts = False

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        self.settings = settings or get_settings()
        if not self.settings.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        self.circuit_breaker = CircuitBreaker(self.name)

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.error.StripeError) -> ProviderErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProviderErrorType: Error classification
        """
        if isinstance(error, stripe.error.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(
            error,
            (
                stripe.error.APIConnectionError,
                stripe.error.APIError,
            ),
        ):
            return ProviderErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.error.CardError,
                stripe.error.InvalidRequestError,
                stripe.error.AuthenticationError,
                stripe.error.PermissionError,
            ),
        ):
            return ProviderErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    def _to_provider_error(self, error: stripe.error.StripeError) -> ProviderError:
        error_type = self._classify_error(error)
        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        metrics.record_provider_error(self.name, error_type.value)
        return ProviderError(
            message=str(error),
            error_type=error_type,
            provider=self.name,
            original_error=error,
        )

    async def _call(self, operation: str, func: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop behind the breaker."""
        start = time.time()
        try:
            result = await self.circuit_breaker.call(asyncio.to_thread, func)
        except stripe.error.StripeError as e:
            metrics.record_provider_call(self.name, operation, "error", time.time() - start)
            raise self._to_provider_error(e) from e
        metrics.record_provider_call(self.name, operation, "ok", time.time() - start)
        return result

    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def create_session(
        self,
        amount_minor: int,
        currency: str,
        payer_email: str,
        reference: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        """
        Create a PaymentIntent.

        The payment reference doubles as the Stripe idempotency key, so
        retrying after a timeout never creates a second charge.

        Args:
            amount_minor: Amount in minor units
            currency: Currency code
            payer_email: Receipt email
            reference: Our payment reference
            metadata: Metadata attached to the intent

        Returns:
            CheckoutSession: PaymentIntent id and client secret
        """
        logger.info(
            "creating_payment_intent",
            amount_minor=amount_minor,
            currency=currency,
            reference=reference,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency.lower(),
                receipt_email=payer_email,
                idempotency_key=reference,
                metadata={**{k: str(v) for k, v in metadata.items()}, "reference": reference},
                automatic_payment_methods={"enabled": True},
            )

        intent = await self._call("create_session", _create)
        logger.info("payment_intent_created", payment_intent_id=intent.id, status=intent.status)
        return CheckoutSession(reference=intent.id, client_secret=intent.client_secret)

    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def verify(self, reference: str) -> VerificationResult:
        """
        Retrieve a PaymentIntent and map its status.

        Args:
            reference: Stripe PaymentIntent id

        Returns:
            VerificationResult: Normalized status
        """
        intent = await self._call(
            "verify", lambda: stripe.PaymentIntent.retrieve(reference)
        )

        failure_reason = None
        if intent.status == "succeeded":
            status = "successful"
        elif intent.status == "canceled" or (
            intent.status == "requires_payment_method" and intent.last_payment_error
        ):
            status = "failed"
            if intent.last_payment_error:
                failure_reason = intent.last_payment_error.get("message")
        else:
            status = "pending"

        return VerificationResult(
            reference=intent.id,
            status=status,
            amount_minor=intent.amount,
            currency=intent.currency.upper(),
            failure_reason=failure_reason,
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        """
        Verify the Stripe-Signature header and normalize the event.

        Raises:
            WebhookSignatureError: If signature verification fails
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get("stripe-signature")
        if not signature or not self.settings.stripe_webhook_secret:
            raise WebhookSignatureError("Missing Stripe signature or webhook secret")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except (stripe.error.SignatureVerificationError, ValueError) as e:
            logger.error("webhook_signature_verification_failed", provider=self.name, error=str(e))
            raise WebhookSignatureError(f"Invalid Stripe webhook: {e}") from e

        obj = event["data"]["object"]
        metadata = dict(obj.get("metadata") or {})

        if event["type"] in _PAYMENT_EVENTS:
            return NormalizedEvent(
                provider=self.name,
                event_id=event["id"],
                event_type=event["type"],
                kind="payment",
                reference=obj["id"],
                status=_PAYMENT_EVENTS[event["type"]],
                amount_minor=obj.get("amount"),
                currency=(obj.get("currency") or "").upper() or None,
                metadata=metadata,
            )

        if event["type"] in _DISPUTE_EVENTS:
            return NormalizedEvent(
                provider=self.name,
                event_id=event["id"],
                event_type=event["type"],
                kind="dispute",
                reference=obj.get("payment_intent"),
                amount_minor=obj.get("amount"),
                currency=(obj.get("currency") or "usd").upper(),
                transaction_id=obj["id"],
                reason=obj.get("reason"),
                metadata=metadata,
            )

        return NormalizedEvent(
            provider=self.name, event_id=event["id"], event_type=event["type"], kind="ignored"
        )
