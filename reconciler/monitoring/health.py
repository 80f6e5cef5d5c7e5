"""
Health checks behind the /health, /health/live and /health/ready endpoints.

Components:
- database: a ``SELECT 1`` round trip, with latency
- gateway: credentials present and, once the client exists, circuit state

The gateway check never calls out; reachability shows up in the gateway
request metrics instead.
"""
import time
from typing import Any, Awaitable, Callable, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.integrations.gateway import GatewayHolder

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """Raised when a component is not usable."""

    pass


class HealthCheck:
    """Aggregates component checks into one status."""

    def __init__(
        self,
        gateway: GatewayHolder,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.checks: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "gateway": self.check_gateway,
        }

    async def check_database(self) -> Dict[str, Any]:
        """
        Run a trivial query.

        Raises:
            HealthCheckError: If the database cannot be reached
        """
        started = time.perf_counter()
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise HealthCheckError(f"Database unreachable: {e}") from e

        return {
            "status": HEALTHY,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Report gateway configuration.

        Raises:
            HealthCheckError: If no credentials are configured or the circuit is open
        """
        if not self.gateway.is_configured:
            raise HealthCheckError("Payment gateway is not configured")

        breaker = getattr(self.gateway.current, "circuit_breaker", None)
        state = getattr(breaker, "state", "not_started")
        if state == "open":
            raise HealthCheckError("Payment gateway circuit breaker is open")
        return {"status": HEALTHY, "circuit": state}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every component check.

        Returns:
            Dict[str, Any]: ``{"status": ..., "checks": {name: result}}``
        """
        results: Dict[str, Any] = {}
        for name, check in self.checks.items():
            try:
                results[name] = await check()
            except HealthCheckError as e:
                logger.warning("health_check_failed", component=name, error=str(e))
                results[name] = {"status": UNHEALTHY, "error": str(e)}

        healthy = all(result["status"] == HEALTHY for result in results.values())
        return {"status": HEALTHY if healthy else UNHEALTHY, "checks": results}

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
