"""
Tests for webhook signature verification and event routing.
"""
import json
from unittest.mock import AsyncMock

import pytest

from payment_reconciliation.core.confirmation import PaymentConfirmation
from payment_reconciliation.core.exceptions import VerificationFailed
from payment_reconciliation.core.handlers import EVENT_ROUTES
from payment_reconciliation.database.models import PaymentTransaction
from payment_reconciliation.integrations.webhook_handler import (
    WebhookDispatcher,
    register_default_handlers,
)


@pytest.fixture
def dispatcher():
    return WebhookDispatcher()


class TestSignatureVerification:
    """Test suite for Stripe-Signature checks."""

    @pytest.mark.unit
    def test_valid_signature(self, dispatcher, sign_payload, checkout_event):
        payload = json.dumps(checkout_event()).encode("utf-8")

        event = dispatcher.verify_signature(payload, sign_payload(payload))

        assert event["id"] == "evt_checkout_1"
        assert event["data"]["object"]["metadata"]["internal_payment_id"] == "ptxn_1"

    @pytest.mark.unit
    def test_missing_signature(self, dispatcher):
        with pytest.raises(VerificationFailed) as exc_info:
            dispatcher.verify_signature(b"{}", None)

        assert exc_info.value.message == "Webhook signature missing."
        assert exc_info.value.http_status == 400

    @pytest.mark.unit
    def test_wrong_secret(self, dispatcher, sign_payload, checkout_event):
        payload = json.dumps(checkout_event()).encode("utf-8")

        with pytest.raises(VerificationFailed) as exc_info:
            dispatcher.verify_signature(payload, sign_payload(payload, secret="whsec_other"))

        assert exc_info.value.message == "Webhook signature verification failed."

    @pytest.mark.unit
    def test_tampered_payload(self, dispatcher, sign_payload, checkout_event):
        payload = json.dumps(checkout_event()).encode("utf-8")
        signature = sign_payload(payload)
        tampered = payload.replace(b"ptxn_1", b"ptxn_2")

        with pytest.raises(VerificationFailed):
            dispatcher.verify_signature(tampered, signature)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_turns_bad_signature_into_400(self, dispatcher, test_db):
        confirmation = await dispatcher.process(b"{}", "t=1,v1=deadbeef", test_db)

        assert confirmation.success is False
        assert confirmation.error == "VerificationFailed"
        assert confirmation.status_code == 400


class TestDispatch:
    """Test suite for event routing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_routes_to_registered_handler(self, dispatcher, test_db):
        handler = AsyncMock(return_value=PaymentConfirmation.ok("ptxn_1", tokens_awarded=100))
        dispatcher.register_handler("checkout.session.completed", handler)
        event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}}

        confirmation = await dispatcher.dispatch(event, test_db)

        assert confirmation.tokens_awarded == 100
        handler.assert_awaited_once_with(event, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged(self, dispatcher, test_db):
        confirmation = await dispatcher.dispatch(
            {"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}}, test_db
        )

        assert confirmation.success is True
        assert confirmation.transaction_id == "evt_1"
        assert confirmation.message == "Unhandled event type: charge.refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type",
        ["product.created", "product.updated", "price.created", "price.updated", "price.deleted"],
    )
    async def test_catalog_events_are_acknowledged_as_unhandled(
        self, dispatcher, gateway, seeded_db, event_type
    ):
        register_default_handlers(dispatcher, gateway)

        confirmation = await dispatcher.dispatch(
            {"id": "evt_catalog", "type": event_type, "data": {"object": {"id": "price_new"}}},
            seeded_db,
        )

        assert event_type not in EVENT_ROUTES
        assert confirmation.success is True
        assert confirmation.message == f"Unhandled event type: {event_type}"
        gateway.retrieve_subscription.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_exception_propagates(self, dispatcher, test_db):
        dispatcher.register_handler(
            "invoice.payment_succeeded", AsyncMock(side_effect=RuntimeError("boom"))
        )

        with pytest.raises(RuntimeError):
            await dispatcher.dispatch(
                {"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}},
                test_db,
            )

    @pytest.mark.unit
    def test_default_handlers_cover_all_routes(self, dispatcher, gateway):
        register_default_handlers(dispatcher, gateway)

        assert set(dispatcher.event_handlers) == set(EVENT_ROUTES)


class TestEndToEnd:
    """Signed payload through the default handlers."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_checkout_event_is_reconciled(
        self, seeded_db, dispatcher, gateway, sign_payload, checkout_event
    ):
        seeded_db.add(
            PaymentTransaction(
                id="ptxn_1",
                user_id="user_1",
                target_wallet_id="wallet_1",
                tokens_to_award=100,
                status="PENDING",
            )
        )
        await seeded_db.commit()
        register_default_handlers(dispatcher, gateway)
        payload = json.dumps(checkout_event()).encode("utf-8")

        confirmation = await dispatcher.process(payload, sign_payload(payload), seeded_db)

        assert confirmation.to_dict() == {
            "success": True,
            "transactionId": "ptxn_1",
            "paymentGatewayTransactionId": "cs_1",
            "tokensAwarded": 100,
        }
