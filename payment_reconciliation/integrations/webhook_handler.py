"""
Stripe webhook dispatcher with signature verification and event routing.

Implements:
- Webhook signature verification
- Event type routing to reconciliation handlers
- Per-event metrics and log context

Deduplication is not done here: handlers are idempotent against the
datastore, so a redelivered event is safe to route again.
"""
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.confirmation import PaymentConfirmation
from payment_reconciliation.core.exceptions import VerificationFailed
from payment_reconciliation.core.handlers import EVENT_ROUTES, build_handlers
from payment_reconciliation.integrations.stripe_client import StripeGatewayClient
from payment_reconciliation.monitoring.logging import bind_event_context
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[PaymentConfirmation]]


class WebhookDispatcher:
    """
    Verifies Stripe deliveries and routes them to a registered handler.

    Handlers receive the event as a plain dict plus the request's database
    session, and return a PaymentConfirmation.
    """

    def __init__(self, webhook_secret: Optional[str] = None) -> None:
        """
        Initialize webhook dispatcher.

        Args:
            webhook_secret: Signing secret (uses config if not provided)
        """
        self.webhook_secret = webhook_secret or get_settings().stripe_webhook_secret
        self.event_handlers: Dict[str, EventHandler] = {}

        logger.info("webhook_dispatcher_initialized")

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'invoice.payment_succeeded')
            handler: Async callable taking (event, db)
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Verified event as a plain dict

        Raises:
            VerificationFailed: Missing or invalid signature, or unparseable payload
        """
        if not signature:
            metrics.record_signature_failure()
            logger.warning("webhook_signature_missing")
            raise VerificationFailed("Webhook signature missing.")

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            metrics.record_signature_failure()
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise VerificationFailed("Webhook signature verification failed.", cause=e) from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise VerificationFailed("Invalid webhook payload.", cause=e) from e

        logger.info(
            "webhook_signature_verified",
            stripe_event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return event

    async def dispatch(self, event: Dict[str, Any], db: AsyncSession) -> PaymentConfirmation:
        """
        Route a verified event to its handler.

        Unregistered event types are acknowledged with success so the
        gateway stops redelivering them.
        """
        event_id = event.get("id")
        event_type = event.get("type", "unknown")
        bind_event_context(event_id, event_type)
        start_time = time.time()

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_unhandled")
            metrics.record_webhook_event(event_type, "ignored", time.time() - start_time)
            return PaymentConfirmation.ok(
                event_id, message=f"Unhandled event type: {event_type}"
            )

        logger.info("processing_webhook_event")
        try:
            confirmation = await handler(event, db)
        except Exception as e:
            metrics.record_webhook_event(event_type, "error", time.time() - start_time)
            logger.error("webhook_event_processing_failed", error=str(e), exc_info=True)
            raise

        outcome = "success" if confirmation.success else "failed"
        metrics.record_webhook_event(event_type, outcome, time.time() - start_time)
        logger.info(
            "webhook_event_processed",
            success=confirmation.success,
            error_code=confirmation.error,
            transaction_id=confirmation.transaction_id,
            tokens_awarded=confirmation.tokens_awarded,
        )
        return confirmation

    async def process(
        self, payload: bytes, signature: Optional[str], db: AsyncSession
    ) -> PaymentConfirmation:
        """Verify then dispatch. Verification failures become a 400 confirmation."""
        try:
            event = self.verify_signature(payload, signature)
        except VerificationFailed as e:
            return PaymentConfirmation.failed(e, transaction_id=None)
        return await self.dispatch(event, db)


def register_default_handlers(
    dispatcher: WebhookDispatcher,
    gateway: StripeGatewayClient,
    payment_gateway_id: str = "stripe",
) -> WebhookDispatcher:
    """Register the reconciliation handlers, built per request around its session."""

    def route(method_name: str) -> EventHandler:
        async def handler(event: Dict[str, Any], db: AsyncSession) -> PaymentConfirmation:
            handlers = build_handlers(db, gateway, payment_gateway_id=payment_gateway_id)
            return await getattr(handlers, method_name)(event)

        return handler

    for event_type, method_name in EVENT_ROUTES.items():
        dispatcher.register_handler(event_type, route(method_name))
    return dispatcher
