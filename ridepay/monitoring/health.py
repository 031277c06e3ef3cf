"""
Health checks for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity
- Razorpay API reachability
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from ridepay.config import get_settings
from ridepay.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for system dependencies.

    The payment gateway client is optional; without one the gateway check
    is reported as skipped.
    """

    def __init__(
        self,
        razorpay_client: Optional[Any] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.settings = get_settings()
        self.razorpay_client = razorpay_client
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client = self.redis_client
        owns_client = redis_client is None
        try:
            if redis_client is None:
                redis_client = aioredis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        finally:
            if owns_client and redis_client is not None:
                await redis_client.aclose()

        return {"status": "healthy", "service": "redis"}

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check Razorpay API reachability.

        Raises:
            HealthCheckError: If the gateway check fails
        """
        if self.razorpay_client is None:
            return {"status": "skipped", "service": "razorpay"}

        try:
            await self.razorpay_client.ping()
        except Exception as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Razorpay health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "razorpay",
            "test_mode": self.settings.is_test_mode,
            "circuit_breaker": self.razorpay_client.circuit_breaker.state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("razorpay", self.check_gateway),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up; no dependency checks."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies reachable."""
        return await self.check_all()
