"""
Gateway event handlers.

Each handler runs one event through a fixed sequence of durable steps and
returns a PaymentConfirmation. Domain failures are reported through the
confirmation, never raised.

Step order for a paid event:
    record (PROCESSING_RENEWAL / existing PENDING row)
    -> ledger credit (idempotency key = gateway event id)
    -> finalize (COMPLETED)
    -> subscription sync

A ledger credit that succeeded is never undone: failures after it still
report success.
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.confirmation import PaymentConfirmation
from payment_reconciliation.core.exceptions import (
    FinalizationFailed,
    GatewayLookupFailed,
    LedgerError,
    PlanNotFound,
    RecordCreationFailed,
    SyncError,
    TransactionInProgress,
    TransactionNotFound,
    UserNotFound,
    WalletNotFound,
)
from payment_reconciliation.core.plan_resolver import PlanRef, PlanResolver
from payment_reconciliation.core.states import PaymentStatus, TransitionResult
from payment_reconciliation.core.subscription_sync import SubscriptionSynchronizer
from payment_reconciliation.core.token_sources import (
    TokenSourceChain,
    invoice_subscription_id,
)
from payment_reconciliation.core.transaction_store import (
    RECLAIMABLE_STATUSES,
    PaymentTransactionStore,
)
from payment_reconciliation.integrations.stripe_client import (
    GatewaySubscription,
    StripeError,
    StripeGatewayClient,
    stripe_field,
)
from payment_reconciliation.integrations.token_ledger import (
    CREDIT_PURCHASE,
    SqlTokenLedger,
    TokenLedger,
)
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RELATED_ENTITY_TYPE = "payment_transactions"

# metadata["type"] values on renewal rows
RENEWAL = "RENEWAL"
RENEWAL_PLAN_NOT_FOUND = "RENEWAL_PLAN_NOT_FOUND"
RENEWAL_FAILED = "RENEWAL_FAILED"

# Gateway event type -> PaymentEventHandlers method
EVENT_ROUTES = {
    "checkout.session.completed": "handle_checkout_session_completed",
    "invoice.payment_succeeded": "handle_invoice_payment_succeeded",
    "invoice.payment_failed": "handle_invoice_payment_failed",
    "customer.subscription.updated": "handle_subscription_updated",
    "customer.subscription.deleted": "handle_subscription_deleted",
}


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    return stripe_field(stripe_field(event, "data"), "object", {})


def _object_id(value: Any) -> Optional[str]:
    """Expandable Stripe fields are either an id string or an object."""
    if value is None or isinstance(value, str):
        return value
    return stripe_field(value, "id")


def _fiat_amount(cents: Optional[int]) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(int(cents)) / Decimal(100)).quantize(Decimal("0.01"))


class PaymentEventHandlers:
    """
    Orchestrates the plan resolver, transaction store, token ledger and
    subscription synchronizer for each supported gateway event.
    """

    def __init__(
        self,
        store: PaymentTransactionStore,
        ledger: TokenLedger,
        resolver: PlanResolver,
        synchronizer: SubscriptionSynchronizer,
        gateway: StripeGatewayClient,
        token_sources: Optional[TokenSourceChain] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.resolver = resolver
        self.synchronizer = synchronizer
        self.gateway = gateway
        self.token_sources = token_sources or TokenSourceChain.default(resolver)

    async def _mark_token_award_failed(
        self,
        transaction_id: str,
        expected_prior: Iterable[PaymentStatus],
        error: str,
    ) -> None:
        """Compensating write after a failed credit. Never raises."""
        try:
            result = await self.store.transition_status(
                transaction_id,
                PaymentStatus.TOKEN_AWARD_FAILED,
                expected_prior=expected_prior,
                extra_metadata={"last_error": error},
            )
        except FinalizationFailed as e:
            logger.critical(
                "token_award_failed_status_not_recorded",
                payment_transaction_id=transaction_id,
                error=e.message,
            )
            return
        if result is not TransitionResult.OK:
            logger.critical(
                "token_award_failed_status_not_recorded",
                payment_transaction_id=transaction_id,
                result=result.value,
            )

    async def _finalize(
        self,
        transaction_id: str,
        expected_prior: Iterable[PaymentStatus],
        gateway_transaction_id: Optional[str] = None,
    ) -> Optional[FinalizationFailed]:
        """Move the row to COMPLETED. Returns the failure instead of raising it."""
        try:
            result = await self.store.transition_status(
                transaction_id,
                PaymentStatus.COMPLETED,
                expected_prior=expected_prior,
                gateway_transaction_id=gateway_transaction_id,
            )
        except FinalizationFailed as e:
            return e
        if result is not TransitionResult.OK:
            return FinalizationFailed(
                f"Failed to finalize payment {transaction_id}: {result.value}",
                payment_transaction_id=transaction_id,
            )
        return None

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------

    async def _resolve_internal_payment_id(self, session: Dict[str, Any]) -> Optional[str]:
        internal_id = stripe_field(stripe_field(session, "metadata"), "internal_payment_id")
        if internal_id:
            return internal_id

        session_id = stripe_field(session, "id")
        if not session_id:
            return None
        logger.warning("internal_payment_id_missing_refetching", checkout_session_id=session_id)
        try:
            fetched = await self.gateway.retrieve_checkout_session(session_id)
        except StripeError as e:
            logger.error(
                "checkout_session_refetch_failed",
                checkout_session_id=session_id,
                error=str(e),
            )
            return None
        return stripe_field(fetched.get("metadata"), "internal_payment_id")

    async def _resolve_checkout_plan(
        self,
        subscription: GatewaySubscription,
        item_id_internal: Optional[str],
    ) -> PlanRef:
        """Price on the subscription first, then the item id stored at session creation."""
        not_found: Optional[PlanNotFound] = None
        if subscription.price_id:
            try:
                return await self.resolver.resolve_by_price(subscription.price_id)
            except PlanNotFound as e:
                not_found = e
        if item_id_internal:
            return await self.resolver.resolve_by_item_id(item_id_internal)
        if not_found is not None:
            raise not_found
        raise GatewayLookupFailed(
            f"Subscription {subscription.id} has no price and no item id is recorded",
            stripe_subscription_id=subscription.id,
        )

    async def handle_checkout_session_completed(
        self, event: Dict[str, Any]
    ) -> PaymentConfirmation:
        """
        Confirm a checkout session (one-time purchase or subscription start).

        Args:
            event: Verified Stripe event as a plain dict

        Returns:
            PaymentConfirmation: Outcome for the dispatcher
        """
        event_id = stripe_field(event, "id")
        session = _event_object(event)
        session_id = stripe_field(session, "id")
        mode = stripe_field(session, "mode")
        log = logger.bind(stripe_event_id=event_id, checkout_session_id=session_id, mode=mode)

        internal_id = await self._resolve_internal_payment_id(session)
        if not internal_id:
            log.error("internal_payment_id_missing")
            return PaymentConfirmation.failed(
                TransactionNotFound("Internal payment ID missing from webhook."),
                transaction_id=None,
                payment_gateway_transaction_id=session_id,
            )
        log = log.bind(payment_transaction_id=internal_id)

        txn = await self.store.get(internal_id)
        if txn is None:
            log.error("payment_transaction_not_found")
            return PaymentConfirmation.failed(
                TransactionNotFound("Payment record not found."),
                transaction_id=internal_id,
                payment_gateway_transaction_id=session_id,
            )

        # Copy what we need: later steps commit and roll back on this session
        status = PaymentStatus.parse(txn.status)
        tokens = int(txn.tokens_to_award or 0)
        user_id = txn.user_id
        wallet_id = txn.target_wallet_id
        stored_metadata = dict(txn.metadata_json or {})

        if status.is_terminal_success:
            log.info("checkout_already_processed", tokens=tokens)
            return PaymentConfirmation.ok(
                internal_id,
                tokens_awarded=tokens,
                message="Payment already processed.",
                payment_gateway_transaction_id=session_id,
            )
        if status is PaymentStatus.FAILED:
            log.warning("checkout_previously_failed")
            return PaymentConfirmation.ok(
                internal_id,
                tokens_awarded=0,
                message="Payment already processed, previously failed.",
                payment_gateway_transaction_id=session_id,
            )

        plan_ref: Optional[PlanRef] = None
        if mode == "subscription":
            subscription_id = _object_id(stripe_field(session, "subscription"))
            customer_id = _object_id(stripe_field(session, "customer"))
            item_id_internal = stored_metadata.get("item_id_internal") or stripe_field(
                stripe_field(session, "metadata"), "item_id"
            )
            try:
                if not subscription_id:
                    raise GatewayLookupFailed("Stripe Subscription ID missing from session.")
                subscription = await self.resolver.fetch_subscription(subscription_id)
                plan_ref = await self._resolve_checkout_plan(subscription, item_id_internal)
            except (PlanNotFound, GatewayLookupFailed) as e:
                log.error(
                    "checkout_plan_resolution_failed",
                    stripe_subscription_id=subscription_id,
                    error_code=e.error_code,
                    error=e.message,
                )
                await self.store.record_error(internal_id, e.message)
                return PaymentConfirmation.failed(
                    e, transaction_id=internal_id, payment_gateway_transaction_id=session_id
                )

            try:
                await self.synchronizer.sync(
                    subscription_id,
                    customer_id,
                    plan_ref,
                    user_id=user_id,
                    subscription=subscription,
                )
            except SyncError as e:
                log.critical(
                    "subscription_sync_failed",
                    stripe_subscription_id=subscription_id,
                    error=e.message,
                )
        elif mode != "payment":
            log.warning("unexpected_checkout_mode")

        if not wallet_id or not user_id:
            missing = "target wallet ID" if not wallet_id else "user ID"
            error = (WalletNotFound if not wallet_id else UserNotFound)(
                f"Token award failed: {missing} missing."
            )
            log.error("token_award_recipient_missing", missing=missing)
            await self._mark_token_award_failed(internal_id, [status], error.message)
            metrics.record_transaction_status("checkout", PaymentStatus.TOKEN_AWARD_FAILED.value)
            return PaymentConfirmation.failed(
                error,
                transaction_id=internal_id,
                tokens_awarded=0,
                payment_gateway_transaction_id=session_id,
            )

        if tokens > 0:
            try:
                credit = await self.ledger.record_transaction(
                    wallet_id=wallet_id,
                    transaction_type=CREDIT_PURCHASE,
                    amount=tokens,
                    idempotency_key=event_id,
                    related_entity_id=internal_id,
                    related_entity_type=RELATED_ENTITY_TYPE,
                    recorded_by_user_id=user_id,
                    notes={
                        "reason": "Checkout Session Completed",
                        "checkout_session_id": session_id,
                        "mode": mode,
                        "stripe_event_id": event_id,
                        "item_id_internal": plan_ref.item_id_internal if plan_ref else None,
                    },
                )
            except LedgerError as e:
                log.error("token_award_failed", tokens=tokens, error=e.message)
                await self._mark_token_award_failed(internal_id, [status], e.message)
                metrics.record_transaction_status(
                    "checkout", PaymentStatus.TOKEN_AWARD_FAILED.value
                )
                return PaymentConfirmation.failed(
                    e,
                    transaction_id=internal_id,
                    tokens_awarded=0,
                    payment_gateway_transaction_id=session_id,
                )
            if not credit.replayed:
                metrics.record_tokens_awarded("checkout", tokens)
        else:
            log.warning("no_tokens_to_award", tokens=tokens)

        finalize_error = await self._finalize(internal_id, [status], gateway_transaction_id=session_id)
        if finalize_error is not None:
            log.critical(
                "payment_finalization_failed_after_credit",
                tokens=tokens,
                error=finalize_error.message,
            )
            return PaymentConfirmation.ok(
                internal_id,
                tokens_awarded=tokens,
                message=f"Tokens awarded, but payment status was not finalized: {finalize_error.message}",
                payment_gateway_transaction_id=session_id,
            )

        metrics.record_transaction_status("checkout", PaymentStatus.COMPLETED.value)
        log.info("checkout_session_completed", tokens=tokens)
        return PaymentConfirmation.ok(
            internal_id,
            tokens_awarded=tokens,
            payment_gateway_transaction_id=session_id,
        )

    # ------------------------------------------------------------------
    # invoice.payment_succeeded
    # ------------------------------------------------------------------

    async def _resolve_payer(self, customer_id: str) -> Tuple[str, str]:
        """
        Raises:
            UserNotFound: No subscription row maps the customer to a user
            WalletNotFound: The user has no wallet
        """
        user_id = await self.synchronizer.find_user_id(customer_id)
        if not user_id:
            raise UserNotFound(
                f"User not found for customer {customer_id}", stripe_customer_id=customer_id
            )
        wallet_id = await self.ledger.find_wallet_id(user_id)
        if not wallet_id:
            raise WalletNotFound(f"Wallet not found for user {user_id}", user_id=user_id)
        return user_id, wallet_id

    async def handle_invoice_payment_succeeded(
        self, event: Dict[str, Any]
    ) -> PaymentConfirmation:
        """
        Credit a paid invoice (subscription renewal).

        Args:
            event: Verified Stripe event as a plain dict

        Returns:
            PaymentConfirmation: Outcome for the dispatcher
        """
        event_id = stripe_field(event, "id")
        invoice = _event_object(event)
        invoice_id = stripe_field(invoice, "id")
        subscription_id = invoice_subscription_id(invoice)
        log = logger.bind(
            stripe_event_id=event_id,
            invoice_id=invoice_id,
            stripe_subscription_id=subscription_id,
        )

        existing = await self.store.find_terminal(invoice_id)
        if existing is not None:
            log.info("invoice_already_processed", payment_transaction_id=existing.id)
            return PaymentConfirmation.ok(
                existing.id,
                tokens_awarded=int(existing.tokens_to_award or 0),
                message="Invoice already processed.",
                payment_gateway_transaction_id=invoice_id,
            )

        customer_id = _object_id(stripe_field(invoice, "customer"))
        if not customer_id:
            log.warning("invoice_without_customer")
            return PaymentConfirmation.ok(
                event_id,
                message="Invoice has no customer; nothing to reconcile.",
                payment_gateway_transaction_id=invoice_id,
            )

        try:
            user_id, wallet_id = await self._resolve_payer(customer_id)
        except (UserNotFound, WalletNotFound) as e:
            log.error("invoice_payer_not_resolved", stripe_customer_id=customer_id, error=e.message)
            return PaymentConfirmation.failed(
                e, transaction_id=None, payment_gateway_transaction_id=invoice_id
            )

        metadata: Dict[str, Any] = {
            "stripe_event_id": event_id,
            "type": RENEWAL,
            "stripe_subscription_id": subscription_id,
            "billing_reason": stripe_field(invoice, "billing_reason"),
        }
        row_data: Dict[str, Any] = {
            "user_id": user_id,
            "target_wallet_id": wallet_id,
            "gateway_transaction_id": invoice_id,
            "amount_requested_fiat": _fiat_amount(stripe_field(invoice, "amount_paid")),
            "currency": stripe_field(invoice, "currency"),
        }

        try:
            award = await self.token_sources.resolve(invoice)
        except (PlanNotFound, GatewayLookupFailed) as e:
            log.error("invoice_plan_resolution_failed", error_code=e.error_code, error=e.message)
            audit = await self.store.record_failed_attempt(
                {
                    **row_data,
                    "tokens_to_award": 0,
                    "metadata_json": {
                        **metadata,
                        "type": RENEWAL_PLAN_NOT_FOUND,
                        "last_error": e.message,
                    },
                }
            )
            metrics.record_transaction_status("renewal", PaymentStatus.FAILED.value)
            return PaymentConfirmation.failed(
                e,
                transaction_id=audit.id if audit is not None else None,
                payment_gateway_transaction_id=invoice_id,
            )

        tokens = award.tokens
        if award.plan is not None:
            metadata["item_id_internal"] = award.plan.item_id_internal
        metadata["token_source"] = award.source
        row_data.update(
            tokens_to_award=tokens,
            status=PaymentStatus.PROCESSING_RENEWAL,
            metadata_json=metadata,
        )

        try:
            txn = await self.store.create(row_data)
        except RecordCreationFailed as e:
            log.error("renewal_record_creation_failed", error=e.message)
            return PaymentConfirmation.failed(
                e, transaction_id=None, payment_gateway_transaction_id=invoice_id
            )
        except TransactionInProgress as e:
            txn = None
            prior = e.existing
            prior_status = PaymentStatus.parse(prior.status)
            if prior_status.is_terminal_success:
                return PaymentConfirmation.ok(
                    prior.id,
                    tokens_awarded=int(prior.tokens_to_award or 0),
                    message="Invoice already processed.",
                    payment_gateway_transaction_id=invoice_id,
                )
            if prior_status in RECLAIMABLE_STATUSES:
                try:
                    txn = await self.store.reclaim(prior, row_data)
                except FinalizationFailed as reclaim_error:
                    return PaymentConfirmation.failed(
                        reclaim_error,
                        transaction_id=prior.id,
                        payment_gateway_transaction_id=invoice_id,
                    )
            if txn is None:
                log.warning(
                    "renewal_in_progress_elsewhere",
                    payment_transaction_id=prior.id,
                    existing_status=prior_status.value,
                )
                return PaymentConfirmation.failed(
                    e, transaction_id=prior.id, payment_gateway_transaction_id=invoice_id
                )

        txn_id = txn.id
        # A reclaimed row keeps the event id of its first attempt as the ledger key
        ledger_key = (txn.metadata_json or {}).get("stripe_event_id") or event_id
        log = log.bind(payment_transaction_id=txn_id)

        if tokens > 0:
            try:
                credit = await self.ledger.record_transaction(
                    wallet_id=wallet_id,
                    transaction_type=CREDIT_PURCHASE,
                    amount=tokens,
                    idempotency_key=ledger_key,
                    related_entity_id=txn_id,
                    related_entity_type=RELATED_ENTITY_TYPE,
                    recorded_by_user_id=user_id,
                    notes={
                        "reason": "Subscription Renewal",
                        "invoice_id": invoice_id,
                        "stripe_event_id": event_id,
                        "stripe_subscription_id": subscription_id,
                        "item_id_internal": metadata.get("item_id_internal"),
                    },
                )
            except LedgerError as e:
                log.error("renewal_token_award_failed", tokens=tokens, error=e.message)
                await self._mark_token_award_failed(
                    txn_id, [PaymentStatus.PROCESSING_RENEWAL], e.message
                )
                metrics.record_transaction_status(
                    "renewal", PaymentStatus.TOKEN_AWARD_FAILED.value
                )
                return PaymentConfirmation.failed(
                    e,
                    transaction_id=txn_id,
                    tokens_awarded=0,
                    payment_gateway_transaction_id=invoice_id,
                )
            if not credit.replayed:
                metrics.record_tokens_awarded("renewal", tokens)

        finalize_error = await self._finalize(txn_id, [PaymentStatus.PROCESSING_RENEWAL])
        if finalize_error is not None:
            log.critical(
                "payment_finalization_failed_after_credit",
                tokens=tokens,
                error=finalize_error.message,
            )
        else:
            metrics.record_transaction_status("renewal", PaymentStatus.COMPLETED.value)

        sync_error: Optional[SyncError] = None
        if subscription_id:
            try:
                await self.synchronizer.sync(
                    subscription_id,
                    customer_id,
                    award.plan,
                    user_id=user_id,
                    subscription=award.subscription,
                )
            except SyncError as e:
                sync_error = e
                log.critical("subscription_sync_failed", error=e.message)

        if finalize_error is not None and sync_error is not None:
            combined = SyncError(
                f"{sync_error.message}; {finalize_error.message}",
                payment_transaction_id=txn_id,
            )
            return PaymentConfirmation.failed(
                combined,
                transaction_id=txn_id,
                tokens_awarded=tokens,
                payment_gateway_transaction_id=invoice_id,
            )
        if finalize_error is not None:
            return PaymentConfirmation.ok(
                txn_id,
                tokens_awarded=tokens,
                message=f"Tokens awarded, but payment status was not finalized: {finalize_error.message}",
                payment_gateway_transaction_id=invoice_id,
            )

        log.info("invoice_payment_reconciled", tokens=tokens, token_source=award.source)
        return PaymentConfirmation.ok(
            txn_id, tokens_awarded=tokens, payment_gateway_transaction_id=invoice_id
        )

    # ------------------------------------------------------------------
    # invoice.payment_failed
    # ------------------------------------------------------------------

    async def handle_invoice_payment_failed(self, event: Dict[str, Any]) -> PaymentConfirmation:
        """Record a failed renewal charge and refresh the subscription status."""
        event_id = stripe_field(event, "id")
        invoice = _event_object(event)
        invoice_id = stripe_field(invoice, "id")
        subscription_id = invoice_subscription_id(invoice)
        log = logger.bind(
            stripe_event_id=event_id,
            invoice_id=invoice_id,
            stripe_subscription_id=subscription_id,
        )

        existing = await self.store.find_by_gateway_id(invoice_id)
        if existing is not None:
            existing_status = PaymentStatus.parse(existing.status)
            if existing_status is PaymentStatus.FAILED:
                log.info("invoice_failure_already_recorded", payment_transaction_id=existing.id)
                return PaymentConfirmation.ok(
                    existing.id,
                    message="Invoice failure already recorded.",
                    payment_gateway_transaction_id=invoice_id,
                )
            if existing_status.is_terminal_success:
                log.warning(
                    "payment_failed_after_completion", payment_transaction_id=existing.id
                )
                return PaymentConfirmation.ok(
                    existing.id,
                    tokens_awarded=int(existing.tokens_to_award or 0),
                    message="Invoice already completed; failure event needs review.",
                    payment_gateway_transaction_id=invoice_id,
                )

        customer_id = _object_id(stripe_field(invoice, "customer"))
        if not customer_id:
            log.warning("invoice_without_customer")
            return PaymentConfirmation.ok(
                event_id,
                message="Invoice has no customer; nothing to reconcile.",
                payment_gateway_transaction_id=invoice_id,
            )

        try:
            user_id, wallet_id = await self._resolve_payer(customer_id)
        except (UserNotFound, WalletNotFound) as e:
            log.critical("failed_invoice_payer_not_resolved", error=e.message)
            return PaymentConfirmation.failed(
                e, transaction_id=None, payment_gateway_transaction_id=invoice_id
            )

        try:
            txn = await self.store.create(
                {
                    "user_id": user_id,
                    "target_wallet_id": wallet_id,
                    "gateway_transaction_id": invoice_id,
                    "status": PaymentStatus.FAILED,
                    "tokens_to_award": 0,
                    "amount_requested_fiat": _fiat_amount(stripe_field(invoice, "amount_due")),
                    "currency": stripe_field(invoice, "currency"),
                    "metadata_json": {
                        "stripe_event_id": event_id,
                        "type": RENEWAL_FAILED,
                        "stripe_subscription_id": subscription_id,
                        "billing_reason": stripe_field(invoice, "billing_reason"),
                        "attempt_count": stripe_field(invoice, "attempt_count"),
                    },
                }
            )
        except (RecordCreationFailed, TransactionInProgress) as e:
            log.error("failed_invoice_record_failed", error=e.message)
            return PaymentConfirmation.failed(
                e, transaction_id=None, payment_gateway_transaction_id=invoice_id
            )
        metrics.record_transaction_status("renewal", PaymentStatus.FAILED.value)

        if subscription_id:
            try:
                await self.synchronizer.sync(
                    subscription_id, customer_id, create_if_missing=False
                )
            except SyncError as e:
                log.warning("subscription_status_refresh_failed", error=e.message)

        log.info("invoice_payment_failure_recorded", payment_transaction_id=txn.id)
        return PaymentConfirmation.ok(
            txn.id,
            tokens_awarded=0,
            message="Invoice payment failure recorded.",
            payment_gateway_transaction_id=invoice_id,
        )

    # ------------------------------------------------------------------
    # customer.subscription.updated / deleted
    # ------------------------------------------------------------------

    async def handle_subscription_updated(self, event: Dict[str, Any]) -> PaymentConfirmation:
        event_id = stripe_field(event, "id")
        subscription = GatewaySubscription.from_stripe(_event_object(event))
        log = logger.bind(stripe_event_id=event_id, stripe_subscription_id=subscription.id)

        if not subscription.customer_id:
            log.warning("subscription_without_customer")
            return PaymentConfirmation.ok(event_id, message="Subscription has no customer.")

        plan_ref: Optional[PlanRef] = None
        if subscription.price_id:
            try:
                plan_ref = await self.resolver.resolve_by_price(subscription.price_id)
            except PlanNotFound:
                log.warning("subscription_plan_not_linked", stripe_price_id=subscription.price_id)

        try:
            row = await self.synchronizer.sync(
                subscription.id,
                subscription.customer_id,
                plan_ref,
                subscription=subscription,
                create_if_missing=False,
            )
        except SyncError as e:
            log.error("subscription_update_failed", error=e.message)
            return PaymentConfirmation.failed(e, transaction_id=event_id)

        if row is None:
            return PaymentConfirmation.ok(
                event_id, message="No internal subscription found; nothing updated."
            )
        return PaymentConfirmation.ok(event_id, message="Subscription updated.")

    async def handle_subscription_deleted(self, event: Dict[str, Any]) -> PaymentConfirmation:
        event_id = stripe_field(event, "id")
        subscription = _event_object(event)
        subscription_id = stripe_field(subscription, "id")
        log = logger.bind(stripe_event_id=event_id, stripe_subscription_id=subscription_id)

        try:
            updated = await self.synchronizer.mark_status(
                subscription_id,
                "canceled",
                cancel_at_period_end=bool(stripe_field(subscription, "cancel_at_period_end", False)),
            )
        except SyncError as e:
            log.error("subscription_cancel_failed", error=e.message)
            return PaymentConfirmation.failed(e, transaction_id=event_id)

        if not updated:
            return PaymentConfirmation.ok(
                event_id, message="No internal subscription found; nothing updated."
            )
        log.info("subscription_canceled")
        return PaymentConfirmation.ok(event_id, message="Subscription canceled.")


def build_handlers(
    db: AsyncSession, gateway: StripeGatewayClient, payment_gateway_id: str = "stripe"
) -> PaymentEventHandlers:
    """Wire the default SQL-backed collaborators around one session."""
    resolver = PlanResolver(db, gateway)
    return PaymentEventHandlers(
        store=PaymentTransactionStore(db, payment_gateway_id=payment_gateway_id),
        ledger=SqlTokenLedger(db),
        resolver=resolver,
        synchronizer=SubscriptionSynchronizer(db, gateway),
        gateway=gateway,
    )
