"""
Payment Transaction Store.

Every write commits on its own so each saga step leaves a durable status
behind. Updates are always scoped by transaction id and may additionally
assert the prior status in the UPDATE predicate.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.exceptions import (
    FinalizationFailed,
    RecordCreationFailed,
    TransactionInProgress,
)
from payment_reconciliation.core.states import (
    TERMINAL_SUCCESS_VALUES,
    PaymentStatus,
    TransitionResult,
)
from payment_reconciliation.database.models import PaymentTransaction

logger = structlog.get_logger(__name__)

# Prior statuses a redelivered renewal may take over
RECLAIMABLE_STATUSES = (PaymentStatus.FAILED, PaymentStatus.TOKEN_AWARD_FAILED)


class PaymentTransactionStore:
    """Reads and scoped writes on payment_transactions."""

    def __init__(self, db: AsyncSession, payment_gateway_id: str = "stripe") -> None:
        self.db = db
        self.payment_gateway_id = payment_gateway_id

    async def get(self, transaction_id: str) -> Optional[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_gateway_id(
        self, gateway_transaction_id: str
    ) -> Optional[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.payment_gateway_id == self.payment_gateway_id,
                PaymentTransaction.gateway_transaction_id == gateway_transaction_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_terminal(self, gateway_transaction_id: str) -> Optional[PaymentTransaction]:
        """
        Idempotency probe.

        Only a terminal-success row counts; a FAILED or in-flight row with the
        same gateway id does not short-circuit processing.
        """
        result = await self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.payment_gateway_id == self.payment_gateway_id,
                PaymentTransaction.gateway_transaction_id == gateway_transaction_id,
                PaymentTransaction.status.in_(TERMINAL_SUCCESS_VALUES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, data: Dict[str, Any]) -> PaymentTransaction:
        """
        Insert a payment transaction and commit.

        Args:
            data: Column values; status may be a PaymentStatus

        Returns:
            PaymentTransaction: The committed row

        Raises:
            TransactionInProgress: A row for this gateway transaction already exists
            RecordCreationFailed: Any other datastore error
        """
        values = dict(data)
        values.setdefault("payment_gateway_id", self.payment_gateway_id)
        values["status"] = PaymentStatus.parse(values.get("status", PaymentStatus.PENDING)).value

        txn = PaymentTransaction(**values)
        self.db.add(txn)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            gateway_txn_id = values.get("gateway_transaction_id")
            existing = (
                await self.find_by_gateway_id(gateway_txn_id) if gateway_txn_id else None
            )
            if existing is None:
                # Conflict on something other than the gateway key
                raise RecordCreationFailed(
                    f"Failed to create payment transaction: {e.orig}", cause=e
                ) from e
            logger.warning(
                "payment_transaction_conflict",
                gateway_transaction_id=gateway_txn_id,
                existing_transaction_id=existing.id,
                existing_status=existing.status,
            )
            raise TransactionInProgress(
                f"Payment transaction for {gateway_txn_id} already exists "
                f"with status {existing.status}",
                existing=existing,
                gateway_transaction_id=gateway_txn_id,
            ) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("payment_transaction_create_failed", error=str(e))
            raise RecordCreationFailed(
                f"Failed to create payment transaction: {e}", cause=e
            ) from e

        logger.info(
            "payment_transaction_created",
            payment_transaction_id=txn.id,
            gateway_transaction_id=txn.gateway_transaction_id,
            status=txn.status,
            tokens_to_award=txn.tokens_to_award,
        )
        return txn

    async def transition_status(
        self,
        transaction_id: str,
        new_status: PaymentStatus,
        expected_prior: Optional[Iterable[PaymentStatus]] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
        gateway_transaction_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move one row to a new status.

        Args:
            transaction_id: Row to update
            new_status: Status to write
            expected_prior: When given, the update only applies if the row is
                currently in one of these statuses
            extra_metadata: Keys merged into the row's metadata
            gateway_transaction_id: Gateway id to stamp on the row with the status

        Returns:
            TransitionResult: OK, CONFLICT (prior status did not match) or NOT_FOUND

        Raises:
            FinalizationFailed: Datastore error
        """
        try:
            current = await self.db.execute(
                select(PaymentTransaction.status, PaymentTransaction.metadata_json).where(
                    PaymentTransaction.id == transaction_id
                )
            )
            row = current.one_or_none()
            if row is None:
                return TransitionResult.NOT_FOUND

            stmt = update(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
            if expected_prior is not None:
                prior_values = _status_values(expected_prior)
                stmt = stmt.where(PaymentTransaction.status.in_(prior_values))

            values: Dict[str, Any] = {"status": new_status.value}
            if gateway_transaction_id is not None:
                values["gateway_transaction_id"] = gateway_transaction_id
            if extra_metadata:
                values["metadata_json"] = {**(row.metadata_json or {}), **extra_metadata}

            result = await self.db.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "payment_transaction_transition_failed",
                payment_transaction_id=transaction_id,
                new_status=new_status.value,
                error=str(e),
            )
            raise FinalizationFailed(
                f"Failed to update transaction {transaction_id} to {new_status.value}: {e}",
                cause=e,
                payment_transaction_id=transaction_id,
            ) from e

        if result.rowcount == 0:
            logger.warning(
                "payment_transaction_transition_conflict",
                payment_transaction_id=transaction_id,
                new_status=new_status.value,
                current_status=row.status,
            )
            return TransitionResult.CONFLICT

        logger.info(
            "payment_transaction_transitioned",
            payment_transaction_id=transaction_id,
            from_status=row.status,
            to_status=new_status.value,
        )
        return TransitionResult.OK

    async def reclaim(
        self, existing: PaymentTransaction, data: Dict[str, Any]
    ) -> Optional[PaymentTransaction]:
        """
        Take over a FAILED or TOKEN_AWARD_FAILED row for a redelivered event.

        The row is moved back to PROCESSING_RENEWAL with fresh amounts, only if
        it is still in a reclaimable status. The stored metadata is kept and
        the new metadata merged over it, except that the original
        stripe_event_id survives so the ledger key stays the same.

        Returns:
            The reclaimed row, or None if another delivery got there first.

        Raises:
            FinalizationFailed: Datastore error
        """
        metadata = {**(existing.metadata_json or {}), **(data.get("metadata_json") or {})}
        original_event_id = (existing.metadata_json or {}).get("stripe_event_id")
        if original_event_id:
            metadata["stripe_event_id"] = original_event_id
        metadata.pop("last_error", None)

        values = {
            key: data[key]
            for key in ("user_id", "target_wallet_id", "tokens_to_award",
                        "amount_requested_fiat", "currency")
            if key in data
        }
        values["status"] = PaymentStatus.PROCESSING_RENEWAL.value
        values["metadata_json"] = metadata

        existing_id = existing.id
        try:
            result = await self.db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.id == existing_id,
                    PaymentTransaction.status.in_(_status_values(RECLAIMABLE_STATUSES)),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise FinalizationFailed(
                f"Failed to reclaim transaction {existing_id}: {e}",
                cause=e,
                payment_transaction_id=existing_id,
            ) from e

        if result.rowcount == 0:
            return None

        logger.info(
            "payment_transaction_reclaimed",
            payment_transaction_id=existing_id,
            stripe_event_id=metadata.get("stripe_event_id"),
        )
        return await self.get(existing_id)

    async def record_failed_attempt(self, data: Dict[str, Any]) -> Optional[PaymentTransaction]:
        """
        Persist a FAILED row for audit.

        An existing row for the same gateway transaction is left untouched.
        Errors are logged, not raised: the caller is already returning a failure.
        """
        values = dict(data)
        values["status"] = PaymentStatus.FAILED
        try:
            return await self.create(values)
        except TransactionInProgress as e:
            logger.info(
                "failed_attempt_already_recorded",
                gateway_transaction_id=values.get("gateway_transaction_id"),
                existing_status=getattr(e.existing, "status", None),
            )
        except RecordCreationFailed as e:
            logger.error(
                "failed_attempt_record_failed",
                gateway_transaction_id=values.get("gateway_transaction_id"),
                error=e.message,
            )
        return None

    async def record_error(self, transaction_id: str, error: str) -> None:
        """Store last_error in the row's metadata without touching its status."""
        try:
            current = await self.db.execute(
                select(PaymentTransaction.metadata_json).where(
                    PaymentTransaction.id == transaction_id
                )
            )
            metadata = current.scalar_one_or_none() or {}
            await self.db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.id == transaction_id)
                .values(metadata_json={**metadata, "last_error": error})
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "payment_transaction_record_error_failed",
                payment_transaction_id=transaction_id,
                error=str(e),
            )

    async def list_stuck(
        self, older_than: datetime, statuses: Iterable[PaymentStatus]
    ) -> List[PaymentTransaction]:
        """Rows in the given statuses last updated before ``older_than``."""
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.payment_gateway_id == self.payment_gateway_id,
                PaymentTransaction.status.in_(_status_values(statuses)),
                PaymentTransaction.updated_at < older_than,
            )
            .order_by(PaymentTransaction.updated_at)
        )
        return list(result.scalars().all())


def _status_values(statuses: Iterable[PaymentStatus]) -> List[str]:
    values = [PaymentStatus.parse(s).value for s in statuses]
    # Legacy rows still carry the old success spelling
    if PaymentStatus.COMPLETED.value in values:
        values.extend(TERMINAL_SUCCESS_VALUES)
    return values
