"""
Webhook event de-duplication using Redis.

A fast path only: a Redis failure never blocks processing, because every
transition applied downstream is conditional and safe to replay.
"""
from typing import Optional

import redis.asyncio as aioredis
import structlog

from creator_ledger.config import get_settings

logger = structlog.get_logger(__name__)


class WebhookDeduplicator:
    """Remembers processed provider event ids for a bounded time."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize deduplicator.

        Args:
            redis_client: Optional Redis client (created lazily from settings otherwise)
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._owns_client = redis_client is None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Create the Redis client on first use unless one was injected."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _key(provider: str, event_id: str) -> str:
        return f"webhook:processed:{provider}:{event_id}"

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            provider: Provider name
            event_id: Provider event id

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._key(provider, event_id)))
        except Exception as e:
            logger.warning(
                "webhook_dedup_check_error", error=str(e), provider=provider, event_id=event_id
            )
            # If Redis is down, process the event anyway to avoid losing it
            return False

    async def mark_event_processed(self, provider: str, event_id: str) -> None:
        """
        Mark webhook event as processed.

        Args:
            provider: Provider name
            event_id: Provider event id
        """
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self._key(provider, event_id), self.settings.webhook_dedup_ttl_seconds, "1"
            )
        except Exception as e:
            logger.warning(
                "webhook_mark_processed_error", error=str(e), provider=provider, event_id=event_id
            )

    async def close(self) -> None:
        """Close Redis connection if this instance created it."""
        if self.redis_client is not None and self._owns_client:
            await self.redis_client.aclose()
            self.redis_client = None
