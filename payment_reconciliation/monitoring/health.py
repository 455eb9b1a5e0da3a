"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Stripe API reachability
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text

from payment_reconciliation.config import get_settings
from payment_reconciliation.database.connection import get_session_factory
from payment_reconciliation.integrations.stripe_client import (
    StripeError,
    StripeGatewayClient,
)

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the reconciliation service's dependencies.

    The datastore is required for readiness. Stripe is reported but only
    degrades the status, since events can still be accepted and retried.
    """

    def __init__(self, gateway: Optional[StripeGatewayClient] = None) -> None:
        self.settings = get_settings()
        self._gateway = gateway

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
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_stripe(self) -> Dict[str, Any]:
        """
        Check Stripe API reachability.

        Raises:
            HealthCheckError: If Stripe check fails
        """
        if self._gateway is None:
            self._gateway = StripeGatewayClient(self.settings)
        try:
            await self._gateway.ping()
        except StripeError as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "stripe",
            "message": "Stripe API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: healthy, degraded (Stripe down) or unhealthy (database down)
        """
        checks: Dict[str, Any] = {}
        status = "healthy"

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            status = "unhealthy"

        try:
            checks["stripe"] = await self.check_stripe()
        except HealthCheckError as e:
            checks["stripe"] = {"status": "unhealthy", "service": "stripe", "error": str(e)}
            if status == "healthy":
                status = "degraded"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up, no dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: only the datastore gates traffic."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "not_ready", "checks": {"database": {"status": "unhealthy", "error": str(e)}}}
        return {"status": "ready", "checks": {"database": database}}
