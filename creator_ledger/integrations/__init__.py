"""Payment provider integrations."""
from .base import (
    CheckoutSession,
    NormalizedEvent,
    PaymentProviderClient,
    ProviderError,
    ProviderErrorType,
    TransferResult,
    VerificationResult,
    WebhookSignatureError,
)
from .registry import ProviderRegistry, build_registry
from .webhook_dedup import WebhookDeduplicator

__all__ = [
    "CheckoutSession",
    "NormalizedEvent",
    "PaymentProviderClient",
    "ProviderError",
    "ProviderErrorType",
    "ProviderRegistry",
    "TransferResult",
    "VerificationResult",
    "WebhookDeduplicator",
    "WebhookSignatureError",
    "build_registry",
]
