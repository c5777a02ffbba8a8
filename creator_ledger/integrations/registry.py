"""Registry of enabled payment provider clients."""
from typing import Dict, Iterable, List, Optional

import structlog

from creator_ledger.config import Settings, get_settings
from creator_ledger.core.errors import RoutingError
from creator_ledger.integrations.base import PaymentProviderClient

logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Holds one client per enabled provider, keyed by provider name."""

    def __init__(self, clients: Optional[Iterable[PaymentProviderClient]] = None):
        self._clients: Dict[str, PaymentProviderClient] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: PaymentProviderClient) -> None:
        """Register or replace a provider client."""
        self._clients[client.name] = client
        logger.info("provider_registered", provider=client.name)

    def get(self, name: str) -> PaymentProviderClient:
        """
        Client for ``name``.

        Raises:
            RoutingError: If the provider is not enabled
        """
        client = self._clients.get(name.upper())
        if client is None:
            raise RoutingError(f"Provider {name} is not enabled")
        return client

    def is_enabled(self, name: str) -> bool:
        """Whether ``name`` has a registered client."""
        return name.upper() in self._clients

    def names(self) -> List[str]:
        """Enabled provider names."""
        return list(self._clients)

    async def close(self) -> None:
        """Close every client."""
        for client in self._clients.values():
            await client.close()


def build_registry(settings: Optional[Settings] = None) -> ProviderRegistry:
    """Create clients for every provider whose credentials are configured."""
    from creator_ledger.integrations.flutterwave_client import FlutterwaveClient
    from creator_ledger.integrations.paystack_client import PaystackClient
    from creator_ledger.integrations.stripe_client import StripeClient

    settings = settings or get_settings()
    registry = ProviderRegistry()
    if settings.stripe_secret_key:
        registry.register(StripeClient(settings))
    if settings.paystack_secret_key:
        registry.register(PaystackClient(settings))
    if settings.flutterwave_secret_key:
        registry.register(FlutterwaveClient(settings))

    if not registry.names():
        logger.warning("no_payment_providers_configured")
    return registry
