"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (charge replay cache)
- Payment gateway reachability
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gavel.config import get_settings
from gavel.database.connection import get_session_factory
from gavel.integrations.gateway import PaymentGateway

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health of the service's dependencies.

    The gateway check is skipped when no gateway is given.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        gateway: Optional[PaymentGateway] = None,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        owned = self.redis_client is None
        redis_client = self.redis_client or aioredis.from_url(
            self.settings.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e
        finally:
            if owned:
                await redis_client.aclose()

        return {"status": "healthy", "service": "redis"}

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check payment gateway reachability.

        Raises:
            HealthCheckError: If the gateway does not answer
        """
        if not await self.gateway.health_check():
            raise HealthCheckError("Payment gateway health check failed")
        return {
            "status": "healthy",
            "service": "payment_gateway",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run every check; the service is healthy only if all pass."""
        checks = {
            "database": self.check_database,
            "redis": self.check_redis,
        }
        if self.gateway is not None:
            checks["payment_gateway"] = self.check_gateway

        results: Dict[str, Any] = {}
        all_healthy = True
        for name, check in checks.items():
            try:
                results[name] = await check()
            except HealthCheckError as e:
                results[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": results,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; dependencies are not checked."""
        return {"status": "alive"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
