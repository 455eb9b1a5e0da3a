"""
Token ledger: append-only wallet credits keyed by an idempotency key.

The reconciliation handlers only ever credit. A replayed credit with an
already-recorded idempotency key returns the original entry instead of
appending a new one.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.exceptions import LedgerError
from payment_reconciliation.database.models import TokenWallet, TokenWalletTransaction
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREDIT_PURCHASE = "CREDIT_PURCHASE"


@dataclass(frozen=True)
class LedgerCredit:
    """Outcome of a credit request; replayed is set when the key was already recorded."""

    entry: TokenWalletTransaction
    replayed: bool = False


class TokenLedger(Protocol):
    """Contract the event handlers depend on."""

    async def find_wallet_id(self, user_id: str) -> Optional[str]:
        ...

    async def record_transaction(
        self,
        wallet_id: str,
        transaction_type: str,
        amount: int,
        idempotency_key: str,
        related_entity_id: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        recorded_by_user_id: Optional[str] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> LedgerCredit:
        ...


class SqlTokenLedger:
    """
    Ledger backed by the token_wallets and token_wallet_transactions tables.

    Each credit runs in its own commit: the wallet row is locked, the entry is
    appended, the balance is updated. The unique idempotency_key column settles
    two concurrent credits with the same key.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_wallet_id(self, user_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(TokenWallet.wallet_id).where(TokenWallet.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _find_entry(self, idempotency_key: str) -> Optional[TokenWalletTransaction]:
        result = await self.db.execute(
            select(TokenWalletTransaction).where(
                TokenWalletTransaction.idempotency_key == idempotency_key
            )
        )
        return result.scalar_one_or_none()

    async def record_transaction(
        self,
        wallet_id: str,
        transaction_type: str,
        amount: int,
        idempotency_key: str,
        related_entity_id: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        recorded_by_user_id: Optional[str] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> LedgerCredit:
        """
        Credit a wallet exactly once per idempotency key.

        Args:
            wallet_id: Wallet to credit
            transaction_type: Ledger entry type, CREDIT_PURCHASE for payments
            amount: Positive integer token amount
            idempotency_key: Gateway event id
            related_entity_id: Payment transaction id
            related_entity_type: Type of the related entity
            recorded_by_user_id: User the credit is recorded for
            notes: Structured context (reason, gateway ids, plan item id)

        Returns:
            LedgerCredit: New entry, or the existing one with replayed=True

        Raises:
            LedgerError: Wallet missing, invalid amount, or datastore failure
        """
        if amount <= 0:
            raise LedgerError(
                f"Ledger credit amount must be positive, got {amount}",
                wallet_id=wallet_id,
                idempotency_key=idempotency_key,
            )

        try:
            existing = await self._find_entry(idempotency_key)
            if existing is not None:
                logger.info(
                    "ledger_idempotent_replay",
                    idempotency_key=idempotency_key,
                    ledger_transaction_id=existing.transaction_id,
                )
                metrics.record_ledger_replay()
                return LedgerCredit(existing, replayed=True)

            result = await self.db.execute(
                select(TokenWallet).where(TokenWallet.wallet_id == wallet_id).with_for_update()
            )
            wallet = result.scalar_one_or_none()
            if wallet is None:
                raise LedgerError(
                    f"Wallet {wallet_id} not found",
                    wallet_id=wallet_id,
                    idempotency_key=idempotency_key,
                )

            new_balance = Decimal(wallet.balance or 0) + amount
            wallet.balance = new_balance
            entry = TokenWalletTransaction(
                wallet_id=wallet_id,
                transaction_type=transaction_type,
                amount=str(amount),
                balance_after_txn=str(int(new_balance)),
                recorded_by_user_id=recorded_by_user_id,
                related_entity_id=related_entity_id,
                related_entity_type=related_entity_type,
                idempotency_key=idempotency_key,
                notes=notes,
            )
            self.db.add(entry)
            await self.db.commit()

        except IntegrityError as e:
            # A concurrent credit with the same key won the insert
            await self.db.rollback()
            winner = await self._find_entry(idempotency_key)
            if winner is not None:
                metrics.record_ledger_replay()
                return LedgerCredit(winner, replayed=True)
            raise LedgerError(
                f"Ledger insert conflict for {idempotency_key}",
                cause=e,
                wallet_id=wallet_id,
            ) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "ledger_credit_failed",
                wallet_id=wallet_id,
                idempotency_key=idempotency_key,
                error=str(e),
            )
            raise LedgerError(f"Ledger credit failed: {e}", cause=e, wallet_id=wallet_id) from e

        logger.info(
            "ledger_credit_recorded",
            wallet_id=wallet_id,
            amount=amount,
            balance_after=entry.balance_after_txn,
            idempotency_key=idempotency_key,
            related_entity_id=related_entity_id,
        )
        return LedgerCredit(entry)
