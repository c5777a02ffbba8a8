"""
Service wiring and request dependencies.

Identity comes from the ``X-Actor-Id`` / ``X-Actor-Role`` headers set by the
authenticating gateway in front of this service.
"""
import time
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Depends, Header, Request
from redis.exceptions import RedisError

from creator_ledger.config import get_settings
from creator_ledger.core.chargebacks import ChargebackHandler
from creator_ledger.core.checkout import CheckoutService
from creator_ledger.core.dunning import DunningEngine
from creator_ledger.core.errors import ForbiddenError, RateLimitedError, UnauthorizedError
from creator_ledger.core.fees import FeePercentResolver
from creator_ledger.core.kyc import DatabaseKycProvider, KycStatusProvider
from creator_ledger.core.ledger import LedgerManager
from creator_ledger.core.notifications import Notifier, build_notifier
from creator_ledger.core.payouts import PayoutService
from creator_ledger.core.risk import RiskEngine
from creator_ledger.core.routing import ProviderSelector
from creator_ledger.core.webhooks import PaymentSettlementService, WebhookIngestor
from creator_ledger.integrations.registry import ProviderRegistry, build_registry
from creator_ledger.integrations.webhook_dedup import WebhookDeduplicator
from creator_ledger.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class RateLimiter:
    """
    Fixed-window per-actor rate limiter backed by Redis.

    Fails open: if Redis is unavailable the request is allowed.
    """

    def __init__(self, redis_client: Optional[aioredis.Redis], limit_per_minute: int):
        self.redis_client = redis_client
        self.limit_per_minute = limit_per_minute

    async def check(self, key: str) -> None:
        """
        Count one request for ``key``.

        Raises:
            RateLimitedError: If the key exceeded its limit in the current minute
        """
        if self.redis_client is None or self.limit_per_minute <= 0:
            return
        window = int(time.time() // 60)
        redis_key = f"ratelimit:{key}:{window}"
        try:
            count = await self.redis_client.incr(redis_key)
            if count == 1:
                await self.redis_client.expire(redis_key, 60)
        except RedisError as e:
            logger.warning("rate_limit_check_failed", key=key, error=str(e))
            return
        if count > self.limit_per_minute:
            raise RateLimitedError(f"Rate limit exceeded for {key}")


class Services:
    """Long-lived service objects shared by all requests."""

    def __init__(
        self,
        registry: ProviderRegistry,
        notifier: Notifier,
        redis_client: Optional[aioredis.Redis] = None,
        kyc_provider: Optional[KycStatusProvider] = None,
        deduplicator: Optional[WebhookDeduplicator] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.notifier = notifier
        self.redis_client = redis_client
        self.kyc_provider = kyc_provider or DatabaseKycProvider()

        self.ledger = LedgerManager()
        self.risk = RiskEngine(self.kyc_provider)
        self.fee_resolver = FeePercentResolver()
        self.selector = ProviderSelector(registry)
        self.checkout = CheckoutService(registry, self.fee_resolver, self.selector)
        self.settlement = PaymentSettlementService(self.ledger, notifier, self.fee_resolver)
        self.chargebacks = ChargebackHandler(self.ledger, self.risk, notifier)
        self.ingestor = WebhookIngestor(
            registry,
            self.settlement,
            self.chargebacks,
            deduplicator or WebhookDeduplicator(redis_client),
        )
        self.payouts = PayoutService(
            self.ledger, self.risk, self.selector, self.kyc_provider, notifier
        )
        self.dunning = DunningEngine(registry, self.settlement, notifier)
        self.health = HealthCheck(redis_client=redis_client, provider_names=registry.names())
        self.rate_limiter = RateLimiter(redis_client, settings.rate_limit_per_minute)

    async def close(self) -> None:
        """Release provider, notifier and Redis resources."""
        await self.registry.close()
        close = getattr(self.notifier, "close", None)
        if close is not None:
            await close()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_services() -> Services:
    """Services for the configured environment."""
    settings = get_settings()
    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    return Services(build_registry(settings), build_notifier(), redis_client)


def get_services(request: Request) -> Services:
    """Services attached to the running application."""
    return request.app.state.services


async def get_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: str = Header(default="user", alias="X-Actor-Role"),
) -> Actor:
    """
    Identify the caller.

    Raises:
        UnauthorizedError: If no actor id was supplied
    """
    if not x_actor_id:
        raise UnauthorizedError("Missing X-Actor-Id header")
    return Actor(user_id=x_actor_id, role=x_actor_role.lower())


async def rate_limited_actor(
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> Actor:
    """Caller identity after the per-actor rate limit check."""
    await services.rate_limiter.check(actor.user_id)
    return actor


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    """
    Caller identity, which must hold the admin role.

    Raises:
        ForbiddenError: If the caller is not an administrator
    """
    if not actor.is_admin:
        raise ForbiddenError(f"Actor {actor.user_id} is not an administrator")
    return actor
