"""
Health check endpoints for Kubernetes readiness and liveness checks.

Checks:
- Database connectivity
- Redis connectivity
- Enabled payment providers
"""
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creator_ledger.config import get_settings
from creator_ledger.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Redis is reported but does not make the service unready: webhook
    de-duplication and rate limiting degrade gracefully without it.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        provider_names: Optional[List[str]] = None,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.provider_names = provider_names or []

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        owned = self.redis_client is None
        redis_client: Optional[aioredis.Redis] = self.redis_client
        try:
            if redis_client is None:
                redis_client = aioredis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            await redis_client.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e
        finally:
            if owned and redis_client is not None:
                await redis_client.aclose()

    def check_providers(self) -> Dict[str, Any]:
        """Report which payment providers are enabled."""
        return {
            "status": "healthy" if self.provider_names else "degraded",
            "service": "providers",
            "enabled": list(self.provider_names),
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status (database decides readiness)
        """
        checks: Dict[str, Any] = {}
        ready = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            ready = False

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {"status": "degraded", "service": "redis", "error": str(e)}

        checks["providers"] = self.check_providers()

        return {
            "status": "healthy" if ready else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness check: the process is running; no dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness check: dependencies needed to serve traffic are available."""
        return await self.check_all()
