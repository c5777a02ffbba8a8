"""
Provider selection.

Picks the provider for a transaction from an explicit preference list or the
payer's country defaults, considering only providers that are enabled and
support the requested method and currency. There is no silent fallback to an
incompatible provider.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import structlog

from creator_ledger.core.currency import SUPPORTED_CURRENCIES
from creator_ledger.core.errors import PaymentValidationError, RoutingError
from creator_ledger.integrations.base import PaymentProviderClient
from creator_ledger.integrations.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

PAYMENT_METHODS = frozenset({"card", "mobile_money"})

_PHONE_RE = re.compile(r"^\+?[0-9]{9,15}$")

# Country -> providers in order of preference
COUNTRY_PROVIDERS: Dict[str, List[str]] = {
    "KE": ["FLUTTERWAVE", "PAYSTACK", "STRIPE"],
    "UG": ["FLUTTERWAVE", "STRIPE"],
    "TZ": ["FLUTTERWAVE", "STRIPE"],
    "GH": ["PAYSTACK", "FLUTTERWAVE", "STRIPE"],
    "NG": ["PAYSTACK", "FLUTTERWAVE", "STRIPE"],
    "ZA": ["PAYSTACK", "FLUTTERWAVE", "STRIPE"],
}
DEFAULT_PROVIDERS: List[str] = ["STRIPE"]
PAYOUT_PROVIDERS: List[str] = ["PAYSTACK", "FLUTTERWAVE"]


@dataclass
class RouteRequest:
    """Inputs for routing one payment."""

    amount_minor: int
    currency: str
    country: str
    method: str = "card"
    phone_number: Optional[str] = None
    preferred_providers: Optional[Sequence[str]] = None


def validate_phone_number(phone_number: Optional[str]) -> str:
    """
    Normalize and validate a mobile-money phone number.

    Raises:
        PaymentValidationError: If missing or malformed
    """
    if not phone_number:
        raise PaymentValidationError("Phone number is required for mobile money")
    cleaned = re.sub(r"[\s\-()]", "", phone_number)
    if not _PHONE_RE.match(cleaned):
        raise PaymentValidationError("Invalid phone number")
    return cleaned


class ProviderSelector:
    """Chooses a payment provider per transaction."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    @staticmethod
    def validate(request: RouteRequest) -> None:
        """
        Validate the request before any provider is considered.

        Raises:
            PaymentValidationError: If the amount, currency, method or phone is invalid
        """
        if request.amount_minor <= 0:
            raise PaymentValidationError("Amount must be positive")
        if request.currency.upper() not in SUPPORTED_CURRENCIES:
            raise PaymentValidationError(f"Unsupported currency: {request.currency}")
        if request.method not in PAYMENT_METHODS:
            raise PaymentValidationError(f"Unsupported payment method: {request.method}")
        if request.method == "mobile_money":
            validate_phone_number(request.phone_number)

    def _candidates(self, request: RouteRequest) -> List[str]:
        if request.preferred_providers:
            return [name.upper() for name in request.preferred_providers]
        return COUNTRY_PROVIDERS.get(request.country.upper(), DEFAULT_PROVIDERS)

    def _usable(self, name: str) -> Optional[PaymentProviderClient]:
        if not self.registry.is_enabled(name):
            return None
        client = self.registry.get(name)
        if client.circuit_open:
            logger.info("provider_skipped_circuit_open", provider=name)
            return None
        return client

    def select(self, request: RouteRequest) -> PaymentProviderClient:
        """
        Select the provider client for ``request``.

        Args:
            request: Routing inputs

        Returns:
            PaymentProviderClient: First enabled, compatible candidate whose
                circuit breaker is not open

        Raises:
            PaymentValidationError: If the request itself is invalid
            RoutingError: If no candidate supports the method and currency
        """
        self.validate(request)
        currency = request.currency.upper()

        for name in self._candidates(request):
            client = self._usable(name)
            if client is not None and client.supports(request.method, currency):
                logger.info(
                    "provider_selected",
                    provider=name,
                    method=request.method,
                    currency=currency,
                    country=request.country,
                )
                return client

        logger.warning(
            "provider_routing_failed",
            method=request.method,
            currency=currency,
            country=request.country,
            preferred=list(request.preferred_providers or []),
        )
        raise RoutingError(
            f"No provider supports {request.method} payments in {currency} "
            f"for country {request.country}"
        )

    def select_for_payout(self, method: str, currency: str) -> PaymentProviderClient:
        """
        Select a payout-capable provider.

        Raises:
            RoutingError: If no enabled provider can send this payout
        """
        for name in PAYOUT_PROVIDERS:
            client = self._usable(name)
            if client is None or not client.supports_payouts:
                continue
            if currency.upper() not in client.currencies:
                continue
            if method == "mobile_money" and "mobile_money" not in client.payment_methods:
                continue
            return client
        raise RoutingError(f"No payout provider supports {method} in {currency}")
