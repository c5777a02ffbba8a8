"""
Paystack API client.

Card and mobile-money collections plus transfers to creators. Webhooks are
signed with HMAC-SHA512 of the raw body using the secret key.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from creator_ledger.config import Settings, get_settings
from creator_ledger.integrations.base import (
    CheckoutSession,
    CircuitBreaker,
    NormalizedEvent,
    PaymentProviderClient,
    ProviderError,
    ProviderErrorType,
    TransferResult,
    VerificationResult,
    WebhookSignatureError,
    is_retryable_provider_error,
)
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_TRANSACTION_STATUS = {
    "success": "successful",
    "failed": "failed",
    "abandoned": "failed",
    "reversed": "failed",
}
_TRANSFER_STATUS = {"success": "completed", "failed": "failed", "reversed": "failed"}


def classify_http_error(error: httpx.HTTPError) -> ProviderErrorType:
    """Map an httpx failure onto the provider error classes."""
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        if code == 429:
            return ProviderErrorType.RATE_LIMIT
        if code >= 500:
            return ProviderErrorType.TRANSIENT
        return ProviderErrorType.PERMANENT
    return ProviderErrorType.TRANSIENT


class PaystackClient(PaymentProviderClient):
    """Async wrapper for Paystack operations."""

    name = "PAYSTACK"
    payment_methods = frozenset({"card", "mobile_money"})
    currencies = frozenset({"NGN", "GHS", "ZAR", "USD", "KES"})
    supports_payouts = True

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        if not self.settings.paystack_secret_key:
            raise ValueError("PAYSTACK_SECRET_KEY not configured")

        self.base_url = self.settings.paystack_base_url.rstrip("/")
        self.headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.settings.paystack_secret_key}",
            "Content-Type": "application/json",
        }
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds
        )
        self.circuit_breaker = CircuitBreaker(self.name)

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        start = time.time()
        operation = endpoint.split("/")[0]

        async def _send() -> Dict[str, Any]:
            try:
                response = await self.http_client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    json=data,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                error_type = classify_http_error(e)
                logger.error(
                    "paystack_api_error",
                    endpoint=endpoint,
                    error_type=error_type.value,
                    error=str(e),
                )
                metrics.record_provider_error(self.name, error_type.value)
                raise ProviderError(str(e), error_type, provider=self.name, original_error=e)

            payload = response.json()
            if not isinstance(payload, dict) or not payload.get("status"):
                message = payload.get("message") if isinstance(payload, dict) else None
                raise ProviderError(
                    message or "Invalid Paystack response",
                    ProviderErrorType.PERMANENT,
                    provider=self.name,
                )
            return payload.get("data") or {}

        try:
            result = await self.circuit_breaker.call(_send)
        except ProviderError:
            metrics.record_provider_call(self.name, operation, "error", time.time() - start)
            raise
        metrics.record_provider_call(self.name, operation, "ok", time.time() - start)
        return result

    async def create_session(
        self,
        amount_minor: int,
        currency: str,
        payer_email: str,
        reference: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        """Initialize a transaction and return the hosted checkout URL."""
        data = await self._request(
            "POST",
            "transaction/initialize",
            {
                "email": payer_email,
                "amount": amount_minor,
                "currency": currency.upper(),
                "reference": reference,
                "callback_url": f"{self.settings.app_base_url}/payment/callback",
                "metadata": metadata,
            },
        )
        logger.info("paystack_transaction_initialized", reference=reference)
        return CheckoutSession(
            reference=data.get("reference", reference),
            redirect_url=data.get("authorization_url"),
        )

    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def verify(self, reference: str) -> VerificationResult:
        """Verify transaction status."""
        data = await self._request("GET", f"transaction/verify/{reference}")
        status = _TRANSACTION_STATUS.get(data.get("status", ""), "pending")
        return VerificationResult(
            reference=data.get("reference", reference),
            status=status,
            amount_minor=data.get("amount"),
            currency=(data.get("currency") or "").upper() or None,
            failure_reason=data.get("gateway_response") if status == "failed" else None,
        )

    async def initiate_transfer(
        self,
        amount_minor: int,
        currency: str,
        method: str,
        account_details: Dict[str, Any],
        reference: str,
    ) -> TransferResult:
        """Create a transfer recipient and send the payout."""
        recipient = await self._request(
            "POST",
            "transferrecipient",
            {
                "type": "mobile_money" if method == "mobile_money" else "nuban",
                "name": account_details.get("account_name", "Creator"),
                "account_number": (
                    account_details.get("phone_number")
                    if method == "mobile_money"
                    else account_details.get("account_number")
                ),
                "bank_code": account_details.get("bank_code"),
                "currency": currency.upper(),
            },
        )
        transfer = await self._request(
            "POST",
            "transfer",
            {
                "source": "balance",
                "amount": amount_minor,
                "recipient": recipient.get("recipient_code"),
                "reference": reference,
                "reason": "Creator payout",
            },
        )
        return TransferResult(
            payout_id=str(transfer.get("transfer_code") or transfer.get("id") or reference),
            status=_TRANSFER_STATUS.get(transfer.get("status", ""), "pending"),
        )

    def _verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        expected = hmac.new(
            (self.settings.paystack_secret_key or "").encode(), payload, hashlib.sha512
        ).hexdigest()
        if not signature or not hmac.compare_digest(expected, signature):
            logger.error("webhook_signature_verification_failed", provider=self.name)
            raise WebhookSignatureError("Invalid Paystack webhook signature")

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        """Verify ``x-paystack-signature`` and normalize the event."""
        lowered = {k.lower(): v for k, v in headers.items()}
        self._verify_signature(payload, lowered.get("x-paystack-signature"))

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError("Malformed Paystack payload") from e

        event = body.get("event", "")
        data = body.get("data") or {}
        reference = data.get("reference")
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        event_id = f"{event}_{data.get('id') or reference}"

        if event in ("charge.success", "charge.failed"):
            return NormalizedEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event,
                kind="payment",
                reference=reference,
                status="successful" if event == "charge.success" else "failed",
                amount_minor=data.get("amount"),
                currency=(data.get("currency") or "").upper() or None,
                metadata=metadata,
            )

        if event.startswith("charge.dispute.create") or data.get("event") == "chargeback":
            transaction = data.get("transaction") or {}
            return NormalizedEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event,
                kind="dispute",
                reference=transaction.get("reference") or reference,
                amount_minor=data.get("amount") or transaction.get("amount"),
                currency=(data.get("currency") or "NGN").upper(),
                transaction_id=str(data.get("id") or reference),
                reason=data.get("reason") or data.get("category"),
                metadata=metadata,
            )

        return NormalizedEvent(
            provider=self.name, event_id=event_id, event_type=event, kind="ignored"
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()
