"""
Tests for the SQL-backed token ledger.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from payment_reconciliation.core.exceptions import LedgerError
from payment_reconciliation.database.models import TokenWallet, TokenWalletTransaction
from payment_reconciliation.integrations.token_ledger import CREDIT_PURCHASE, SqlTokenLedger


async def _balance(db, wallet_id="wallet_1"):
    result = await db.execute(
        select(TokenWallet.balance).where(TokenWallet.wallet_id == wallet_id)
    )
    return Decimal(result.scalar_one())


async def _entry_count(db):
    result = await db.execute(select(func.count()).select_from(TokenWalletTransaction))
    return result.scalar_one()


class TestSqlTokenLedger:
    """Test suite for exactly-once credits."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_wallet_id(self, seeded_db):
        ledger = SqlTokenLedger(seeded_db)

        assert await ledger.find_wallet_id("user_1") == "wallet_1"
        assert await ledger.find_wallet_id("user_without_wallet") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credit_appends_entry_and_updates_balance(self, seeded_db):
        ledger = SqlTokenLedger(seeded_db)

        credit = await ledger.record_transaction(
            wallet_id="wallet_1",
            transaction_type=CREDIT_PURCHASE,
            amount=100,
            idempotency_key="evt_1",
            related_entity_id="ptxn_1",
            related_entity_type="payment_transactions",
            recorded_by_user_id="user_1",
            notes={"reason": "Checkout Session Completed"},
        )

        entry = credit.entry
        assert credit.replayed is False
        assert entry.amount == "100"
        assert entry.balance_after_txn == "100"
        assert entry.notes["reason"] == "Checkout Session Completed"
        assert await _balance(seeded_db) == 100

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_key_credits_once(self, seeded_db):
        ledger = SqlTokenLedger(seeded_db)

        first = await ledger.record_transaction(
            wallet_id="wallet_1",
            transaction_type=CREDIT_PURCHASE,
            amount=100,
            idempotency_key="evt_1",
        )
        second = await ledger.record_transaction(
            wallet_id="wallet_1",
            transaction_type=CREDIT_PURCHASE,
            amount=100,
            idempotency_key="evt_1",
        )

        assert first.replayed is False
        assert second.replayed is True
        assert second.entry.transaction_id == first.entry.transaction_id
        assert await _entry_count(seeded_db) == 1
        assert await _balance(seeded_db) == 100

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_distinct_keys_accumulate(self, seeded_db):
        ledger = SqlTokenLedger(seeded_db)

        await ledger.record_transaction(
            wallet_id="wallet_1", transaction_type=CREDIT_PURCHASE, amount=100, idempotency_key="evt_1"
        )
        credit = await ledger.record_transaction(
            wallet_id="wallet_1", transaction_type=CREDIT_PURCHASE, amount=500, idempotency_key="evt_2"
        )

        assert credit.entry.balance_after_txn == "600"
        assert await _balance(seeded_db) == 600

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_wallet_raises(self, seeded_db):
        ledger = SqlTokenLedger(seeded_db)

        with pytest.raises(LedgerError):
            await ledger.record_transaction(
                wallet_id="wallet_missing",
                transaction_type=CREDIT_PURCHASE,
                amount=100,
                idempotency_key="evt_1",
            )

        assert await _entry_count(seeded_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10])
    async def test_non_positive_amount_raises(self, seeded_db, amount):
        ledger = SqlTokenLedger(seeded_db)

        with pytest.raises(LedgerError):
            await ledger.record_transaction(
                wallet_id="wallet_1",
                transaction_type=CREDIT_PURCHASE,
                amount=amount,
                idempotency_key="evt_1",
            )
