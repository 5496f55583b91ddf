"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Gateway circuit breaker state
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_systems.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for monitoring system dependencies."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Any = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory to probe (defaults to the app's)
            gateway: Gateway whose circuit breaker state is reported, if any
        """
        self.session_factory = session_factory
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

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    def check_gateway(self) -> Dict[str, Any]:
        """
        Report the gateway circuit breaker without calling the provider.

        Raises:
            HealthCheckError: If the circuit is open
        """
        breaker = getattr(self.gateway, "circuit_breaker", None)
        state = getattr(breaker, "state", "closed")
        if state == "open":
            raise HealthCheckError("Gateway circuit breaker is open")
        return {"status": "healthy", "service": "gateway", "circuit_breaker": state}

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            all_healthy = False

        try:
            checks["gateway"] = self.check_gateway()
        except HealthCheckError as e:
            checks["gateway"] = {"status": "unhealthy", "service": "gateway", "error": str(e)}
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up. External dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies are reachable."""
        return await self.check_all()
