"""
Tests for invoice.payment_succeeded and invoice.payment_failed reconciliation.
"""
from dataclasses import replace
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from payment_reconciliation.core.exceptions import FinalizationFailed, LedgerError
from payment_reconciliation.core.handlers import PaymentEventHandlers
from payment_reconciliation.core.plan_resolver import PlanResolver
from payment_reconciliation.core.states import PaymentStatus
from payment_reconciliation.core.subscription_sync import SubscriptionSynchronizer
from payment_reconciliation.core.transaction_store import PaymentTransactionStore
from payment_reconciliation.database.models import (
    PaymentTransaction,
    TokenWallet,
    TokenWalletTransaction,
    UserSubscription,
)
from payment_reconciliation.integrations.stripe_client import StripeError, StripeErrorType
from payment_reconciliation.integrations.token_ledger import SqlTokenLedger


class BrokenLedger(SqlTokenLedger):
    """Real wallet lookups, failing credits."""

    async def record_transaction(self, **kwargs):
        raise LedgerError("Ledger credit failed: disk I/O error")


class UnfinalizableStore(PaymentTransactionStore):
    async def transition_status(self, transaction_id, new_status, **kwargs):
        if new_status is PaymentStatus.COMPLETED:
            raise FinalizationFailed(f"Failed to update transaction {transaction_id} to COMPLETED")
        return await super().transition_status(transaction_id, new_status, **kwargs)


def _handlers_with(db, gateway, ledger, store=None):
    return PaymentEventHandlers(
        store=store or PaymentTransactionStore(db),
        ledger=ledger,
        resolver=PlanResolver(db, gateway),
        synchronizer=SubscriptionSynchronizer(db, gateway),
        gateway=gateway,
    )


async def _balance(db):
    result = await db.execute(select(TokenWallet.balance).where(TokenWallet.wallet_id == "wallet_1"))
    return Decimal(result.scalar_one())


async def _rows_for(db, invoice_id):
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.gateway_transaction_id == invoice_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _subscription_state(db, subscription_id="sub_1"):
    result = await db.execute(
        select(UserSubscription)
        .where(UserSubscription.stripe_subscription_id == subscription_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one()
    return (row.status, row.plan_id, row.current_period_end)


class TestInvoicePaymentSucceeded:
    """Renewal credits."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_renewal_is_credited_and_completed(
        self, seeded_db, handlers, ledger, gateway, invoice_event
    ):
        confirmation = await handlers.handle_invoice_payment_succeeded(invoice_event())

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 500
        assert confirmation.payment_gateway_transaction_id == "in_1"

        rows = await _rows_for(seeded_db, "in_1")
        assert len(rows) == 1
        txn = rows[0]
        assert txn.id == confirmation.transaction_id
        assert txn.status == "COMPLETED"
        assert txn.tokens_to_award == 500
        assert txn.amount_requested_fiat == Decimal("19.99")
        assert txn.metadata_json["type"] == "RENEWAL"
        assert txn.metadata_json["item_id_internal"] == "item_basic"
        assert txn.metadata_json["token_source"] == "plan_lookup"

        assert ledger.calls[0]["idempotency_key"] == "evt_invoice_1"
        assert ledger.calls[0]["notes"]["reason"] == "Subscription Renewal"
        assert await _balance(seeded_db) == 500
        gateway.retrieve_subscription.assert_awaited_once_with("sub_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_short_circuited(
        self, seeded_db, handlers, ledger, gateway, gateway_subscription, invoice_event
    ):
        first = await handlers.handle_invoice_payment_succeeded(invoice_event())
        subscription_before = await _subscription_state(seeded_db)
        gateway.reset_mock()
        gateway.retrieve_subscription.return_value = replace(gateway_subscription, status="past_due")

        second = await handlers.handle_invoice_payment_succeeded(invoice_event())

        assert second.success is True
        assert second.transaction_id == first.transaction_id
        assert second.tokens_awarded == 500
        assert second.message == "Invoice already processed."
        assert len(ledger.calls) == 1
        assert await _balance(seeded_db) == 500
        gateway.retrieve_subscription.assert_not_called()
        assert await _subscription_state(seeded_db) == subscription_before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_with_new_event_id_is_short_circuited(
        self, seeded_db, handlers, ledger, invoice_event
    ):
        await handlers.handle_invoice_payment_succeeded(invoice_event())

        second = await handlers.handle_invoice_payment_succeeded(
            invoice_event(event_id="evt_invoice_2")
        )

        assert second.message == "Invoice already processed."
        assert len(ledger.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metadata_tokens_skip_plan_lookup(
        self, seeded_db, handlers, ledger, invoice_event
    ):
        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(price_id="price_not_in_catalog", metadata={"tokens_to_award": "250"})
        )

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 250
        assert ledger.calls[0]["amount"] == 250

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_plan_records_failed_audit_row(
        self, seeded_db, handlers, ledger, invoice_event
    ):
        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(price_id="price_missing")
        )

        assert confirmation.success is False
        assert confirmation.error == "PlanNotFound"
        assert ledger.calls == []

        rows = await _rows_for(seeded_db, "in_1")
        assert len(rows) == 1
        assert rows[0].id == confirmation.transaction_id
        assert rows[0].status == "FAILED"
        assert rows[0].metadata_json["type"] == "RENEWAL_PLAN_NOT_FOUND"
        assert "price_missing" in rows[0].metadata_json["last_error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_customer(self, handlers, ledger, invoice_event):
        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(customer="cus_unknown")
        )

        assert confirmation.success is False
        assert confirmation.error == "UserNotFound"
        assert confirmation.status_code == 500
        assert ledger.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_user_without_wallet(self, seeded_db, handlers, invoice_event):
        seeded_db.add(
            UserSubscription(
                user_id="user_2",
                stripe_customer_id="cus_2",
                stripe_subscription_id="sub_2",
                status="active",
            )
        )
        await seeded_db.commit()

        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(customer="cus_2", subscription="sub_2")
        )

        assert confirmation.success is False
        assert confirmation.error == "WalletNotFound"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_without_customer_is_acknowledged(
        self, seeded_db, handlers, invoice_event
    ):
        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(customer=None)
        )

        assert confirmation.success is True
        assert confirmation.message == "Invoice has no customer; nothing to reconcile."
        assert await _rows_for(seeded_db, "in_1") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ledger_failure_marks_token_award_failed(
        self, seeded_db, gateway, invoice_event
    ):
        handlers = _handlers_with(seeded_db, gateway, BrokenLedger(seeded_db))

        confirmation = await handlers.handle_invoice_payment_succeeded(invoice_event())

        assert confirmation.success is False
        assert confirmation.error == "LedgerError"
        assert confirmation.tokens_awarded == 0
        rows = await _rows_for(seeded_db, "in_1")
        assert rows[0].status == "TOKEN_AWARD_FAILED"
        assert await _balance(seeded_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_reclaims_failed_row_with_original_key(
        self, seeded_db, gateway, ledger, invoice_event
    ):
        await _handlers_with(seeded_db, gateway, BrokenLedger(seeded_db)).handle_invoice_payment_succeeded(
            invoice_event()
        )

        confirmation = await _handlers_with(
            seeded_db, gateway, ledger
        ).handle_invoice_payment_succeeded(invoice_event(event_id="evt_invoice_retry"))

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 500
        assert ledger.calls[0]["idempotency_key"] == "evt_invoice_1"

        rows = await _rows_for(seeded_db, "in_1")
        assert len(rows) == 1
        assert rows[0].status == "COMPLETED"
        assert rows[0].metadata_json["stripe_event_id"] == "evt_invoice_1"
        assert await _balance(seeded_db) == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_plan_lookup_row_is_reclaimed_once_plan_exists(
        self, seeded_db, handlers, ledger, invoice_event
    ):
        await handlers.handle_invoice_payment_succeeded(invoice_event(price_id="price_missing"))

        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(event_id="evt_invoice_2")
        )

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 500
        rows = await _rows_for(seeded_db, "in_1")
        assert len(rows) == 1
        assert rows[0].status == "COMPLETED"
        assert rows[0].metadata_json["type"] == "RENEWAL"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_in_flight_row_defers_redelivery(
        self, seeded_db, handlers, ledger, invoice_event
    ):
        seeded_db.add(
            PaymentTransaction(
                id="ptxn_in_flight",
                user_id="user_1",
                target_wallet_id="wallet_1",
                gateway_transaction_id="in_1",
                tokens_to_award=500,
                status="PROCESSING_RENEWAL",
                metadata_json={"stripe_event_id": "evt_invoice_1"},
            )
        )
        await seeded_db.commit()

        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(event_id="evt_invoice_2")
        )

        assert confirmation.success is False
        assert confirmation.error == "TransactionInProgress"
        assert confirmation.retryable is True
        assert confirmation.status_code == 409
        assert confirmation.transaction_id == "ptxn_in_flight"
        assert ledger.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finalization_failure_alone_is_success(
        self, seeded_db, gateway, ledger, invoice_event
    ):
        handlers = _handlers_with(seeded_db, gateway, ledger, store=UnfinalizableStore(seeded_db))

        confirmation = await handlers.handle_invoice_payment_succeeded(invoice_event())

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 500
        assert "not finalized" in confirmation.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_failure_alone_is_success(self, seeded_db, handlers, gateway, invoice_event):
        gateway.retrieve_subscription.side_effect = StripeError(
            "api unavailable", StripeErrorType.TRANSIENT
        )

        confirmation = await handlers.handle_invoice_payment_succeeded(invoice_event())

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 500
        rows = await _rows_for(seeded_db, "in_1")
        assert rows[0].status == "COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finalization_and_sync_failure_reports_sync_error(
        self, seeded_db, gateway, ledger, invoice_event
    ):
        gateway.retrieve_subscription.side_effect = StripeError(
            "api unavailable", StripeErrorType.TRANSIENT
        )
        handlers = _handlers_with(seeded_db, gateway, ledger, store=UnfinalizableStore(seeded_db))

        confirmation = await handlers.handle_invoice_payment_succeeded(invoice_event())

        assert confirmation.success is False
        assert confirmation.error == "SyncError"
        assert confirmation.tokens_awarded == 500
        assert confirmation.message.startswith("Failed to fetch subscription sub_1")
        assert "COMPLETED" in confirmation.message
        assert await _balance(seeded_db) == 500


class TestInvoicePaymentFailed:
    """Failed renewal charges."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_is_recorded(self, seeded_db, handlers, ledger, invoice_event):
        confirmation = await handlers.handle_invoice_payment_failed(
            invoice_event(event_id="evt_failed_1", event_type="invoice.payment_failed")
        )

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 0
        assert confirmation.message == "Invoice payment failure recorded."
        assert ledger.calls == []

        rows = await _rows_for(seeded_db, "in_1")
        assert rows[0].status == "FAILED"
        assert rows[0].metadata_json["type"] == "RENEWAL_FAILED"
        assert rows[0].metadata_json["attempt_count"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_replay_is_acknowledged(self, seeded_db, handlers, invoice_event):
        event = invoice_event(event_id="evt_failed_1", event_type="invoice.payment_failed")
        await handlers.handle_invoice_payment_failed(event)

        confirmation = await handlers.handle_invoice_payment_failed(event)

        assert confirmation.message == "Invoice failure already recorded."
        result = await seeded_db.execute(select(func.count()).select_from(PaymentTransaction))
        assert result.scalar_one() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_after_completion_is_flagged(self, seeded_db, handlers, invoice_event):
        await handlers.handle_invoice_payment_succeeded(invoice_event())

        confirmation = await handlers.handle_invoice_payment_failed(
            invoice_event(event_id="evt_failed_1", event_type="invoice.payment_failed")
        )

        assert confirmation.success is True
        assert confirmation.message == "Invoice already completed; failure event needs review."
        rows = await _rows_for(seeded_db, "in_1")
        assert rows[0].status == "COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_later_success_reclaims_failed_row(
        self, seeded_db, handlers, ledger, invoice_event
    ):
        await handlers.handle_invoice_payment_failed(
            invoice_event(event_id="evt_failed_1", event_type="invoice.payment_failed")
        )

        confirmation = await handlers.handle_invoice_payment_succeeded(
            invoice_event(event_id="evt_paid_1")
        )

        assert confirmation.success is True
        assert confirmation.tokens_awarded == 500
        # The failed row's event id becomes the ledger key
        assert ledger.calls[0]["idempotency_key"] == "evt_failed_1"
        result = await seeded_db.execute(select(func.count()).select_from(TokenWalletTransaction))
        assert result.scalar_one() == 1
