"""
Flutterwave API client.

Flutterwave quotes amounts in major units, so amounts are converted at this
boundary. Webhooks carry a ``verif-hash`` header equal to the configured
secret hash.
"""
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from creator_ledger.config import Settings, get_settings
from creator_ledger.core.currency import from_minor_units, to_minor_units
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
from creator_ledger.integrations.paystack_client import classify_http_error
from creator_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_TRANSFER_STATUS = {"SUCCESSFUL": "completed", "FAILED": "failed"}


def _major_amount(value: Any, currency: str) -> Optional[int]:
    if value is None:
        return None
    return to_minor_units(Decimal(str(value)), currency)


class FlutterwaveClient(PaymentProviderClient):
    """Async wrapper for Flutterwave operations."""

    name = "FLUTTERWAVE"
    payment_methods = frozenset({"card", "mobile_money"})
    currencies = frozenset({"NGN", "GHS", "KES", "UGX", "ZAR", "USD", "EUR", "GBP", "TZS"})
    supports_payouts = True

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        if not self.settings.flutterwave_secret_key:
            raise ValueError("FLUTTERWAVE_SECRET_KEY not configured")

        self.base_url = self.settings.flutterwave_base_url.rstrip("/")
        self.headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.settings.flutterwave_secret_key}",
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
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        start = time.time()
        operation = endpoint.strip("/").split("/")[0]

        async def _send() -> Dict[str, Any]:
            try:
                response = await self.http_client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    headers=self.headers,
                    json=data,
                    params=params,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                error_type = classify_http_error(e)
                logger.error(
                    "flutterwave_api_error",
                    endpoint=endpoint,
                    error_type=error_type.value,
                    error=str(e),
                )
                metrics.record_provider_error(self.name, error_type.value)
                raise ProviderError(str(e), error_type, provider=self.name, original_error=e)

            payload = response.json()
            if not isinstance(payload, dict) or payload.get("status") != "success":
                message = payload.get("message") if isinstance(payload, dict) else None
                raise ProviderError(
                    message or "Flutterwave API error",
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
        """Create a standard payment link."""
        data = await self._request(
            "POST",
            "/payments",
            {
                "tx_ref": reference,
                "amount": str(from_minor_units(amount_minor, currency)),
                "currency": currency.upper(),
                "redirect_url": f"{self.settings.app_base_url}/payment/success?tx_ref={reference}",
                "payment_options": "card,mobilemoney",
                "customer": {"email": payer_email},
                "meta": metadata,
            },
        )
        logger.info("flutterwave_payment_link_created", reference=reference)
        return CheckoutSession(reference=reference, redirect_url=data.get("link"))

    @retry(
        retry=retry_if_exception(is_retryable_provider_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def verify(self, reference: str) -> VerificationResult:
        """Verify a transaction by its tx_ref."""
        data = await self._request(
            "GET", "/transactions/verify_by_reference", params={"tx_ref": reference}
        )
        raw_status = data.get("status")
        if raw_status == "successful":
            status = "successful"
        elif raw_status == "failed":
            status = "failed"
        else:
            status = "pending"
        currency = (data.get("currency") or "USD").upper()
        return VerificationResult(
            reference=data.get("tx_ref", reference),
            status=status,
            amount_minor=_major_amount(data.get("amount"), currency),
            currency=currency,
            failure_reason=data.get("processor_response") if status == "failed" else None,
        )

    async def initiate_transfer(
        self,
        amount_minor: int,
        currency: str,
        method: str,
        account_details: Dict[str, Any],
        reference: str,
    ) -> TransferResult:
        """Send a bank or mobile-money transfer."""
        if method == "mobile_money":
            account_bank = account_details.get("network", "MPS")
            account_number = account_details.get("phone_number")
        else:
            account_bank = account_details.get("bank_code")
            account_number = account_details.get("account_number")

        data = await self._request(
            "POST",
            "/transfers",
            {
                "account_bank": account_bank,
                "account_number": account_number,
                "amount": str(from_minor_units(amount_minor, currency)),
                "currency": currency.upper(),
                "reference": reference,
                "narration": "Creator payout",
            },
        )
        return TransferResult(
            payout_id=str(data.get("id") or reference),
            status=_TRANSFER_STATUS.get(str(data.get("status", "")).upper(), "pending"),
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> NormalizedEvent:
        """Check ``verif-hash`` and normalize the event."""
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get("verif-hash")
        expected = self.settings.flutterwave_webhook_hash
        if not signature or not expected or not hmac.compare_digest(signature, expected):
            logger.error("webhook_signature_verification_failed", provider=self.name)
            raise WebhookSignatureError("Invalid Flutterwave webhook signature")

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError("Malformed Flutterwave payload") from e

        event = body.get("event", "")
        data = body.get("data") or {}
        currency = (data.get("currency") or "USD").upper()
        metadata = body.get("meta_data") or data.get("meta") or {}
        event_id = f"{event}_{data.get('id') or data.get('tx_ref')}"

        if event == "charge.completed":
            raw_status = data.get("status")
            return NormalizedEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event,
                kind="payment",
                reference=data.get("tx_ref"),
                status={"successful": "successful", "failed": "failed"}.get(raw_status, "pending"),
                amount_minor=_major_amount(data.get("amount"), currency),
                currency=currency,
                metadata=metadata if isinstance(metadata, dict) else {},
            )

        if event.startswith("chargeback") or data.get("event") == "chargeback":
            return NormalizedEvent(
                provider=self.name,
                event_id=event_id,
                event_type=event,
                kind="dispute",
                reference=data.get("tx_ref"),
                amount_minor=_major_amount(data.get("amount"), currency),
                currency=currency,
                transaction_id=str(data.get("id") or data.get("tx_ref")),
                reason=data.get("reason"),
                metadata=metadata if isinstance(metadata, dict) else {},
            )

        return NormalizedEvent(
            provider=self.name, event_id=event_id, event_type=event, kind="ignored"
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()
