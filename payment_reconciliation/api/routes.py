"""
API routes for webhook reconciliation.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.reconciliation import ReconciliationEngine
from payment_reconciliation.database.connection import get_db
from payment_reconciliation.integrations.stripe_client import StripeGatewayClient
from payment_reconciliation.integrations.webhook_handler import (
    WebhookDispatcher,
    register_default_handlers,
)
from payment_reconciliation.monitoring.health import HealthCheck
from payment_reconciliation.monitoring.logging import clear_event_context

from .schemas import HealthCheckResponse, PaymentConfirmationResponse, ReconciliationResponse

logger = structlog.get_logger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

_dispatcher: Optional[WebhookDispatcher] = None
_health_check: Optional[HealthCheck] = None


def get_dispatcher() -> WebhookDispatcher:
    """Dispatcher with the reconciliation handlers registered, created on first use."""
    global _dispatcher
    if _dispatcher is None:
        settings = get_settings()
        _dispatcher = register_default_handlers(
            WebhookDispatcher(settings.stripe_webhook_secret),
            StripeGatewayClient(settings),
            payment_gateway_id=settings.payment_gateway_id,
        )
    return _dispatcher


def get_health_check() -> HealthCheck:
    global _health_check
    if _health_check is None:
        _health_check = HealthCheck()
    return _health_check


def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine()


@webhook_router.post(
    "/stripe",
    response_model=PaymentConfirmationResponse,
    summary="Stripe webhook endpoint",
    description="Verify a Stripe event and reconcile it into payment records and the token ledger",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """
    Handle a Stripe webhook delivery.

    The status code follows the confirmation: 2xx acknowledges the event,
    4xx/5xx makes Stripe redeliver it later.
    """
    body = await request.body()
    try:
        confirmation = await dispatcher.process(body, stripe_signature, db)
    finally:
        clear_event_context()

    if not confirmation.success:
        logger.warning(
            "api_webhook_not_reconciled",
            error_code=confirmation.error,
            status_code=confirmation.status_code,
            retryable=confirmation.retryable,
        )
    return JSONResponse(status_code=confirmation.status_code, content=confirmation.to_dict())


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Scan for stuck transactions",
    description="Report TOKEN_AWARD_FAILED and stale in-flight payment transactions",
)
async def run_reconciliation(
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Run the stuck-transaction scan now."""
    logger.info("api_reconciliation_started")
    result = await engine.find_stuck_transactions(db)
    logger.info("api_reconciliation_completed", stuck_total=result["stuck_total"])
    return result


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "ready":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
