"""
Stuck-transaction scan.

Finds payment transactions a handler left behind:
- TOKEN_AWARD_FAILED rows (a credit never landed)
- PENDING / PROCESSING_RENEWAL rows older than the configured age

The scan is read-only. Repairs come from gateway redelivery (handlers are
idempotent and reuse the original ledger key) or from manual action.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.states import PaymentStatus
from payment_reconciliation.core.transaction_store import PaymentTransactionStore
from payment_reconciliation.database.connection import get_session_factory
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STUCK_STATUSES = (
    PaymentStatus.TOKEN_AWARD_FAILED,
    PaymentStatus.PENDING,
    PaymentStatus.PROCESSING_RENEWAL,
)


class ReconciliationEngine:
    """Reports payment transactions that need out-of-band repair."""

    def __init__(self, stuck_age_minutes: Optional[int] = None) -> None:
        """
        Initialize reconciliation engine.

        Args:
            stuck_age_minutes: Minimum age of a row before it counts as stuck
        """
        settings = get_settings()
        self.stuck_age = timedelta(
            minutes=(
                stuck_age_minutes
                if stuck_age_minutes is not None
                else settings.stuck_transaction_age_minutes
            )
        )
        self.payment_gateway_id = settings.payment_gateway_id

    async def find_stuck_transactions(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Scan for stuck transactions and report them.

        Args:
            db: Database session
            now: Reference time (defaults to current UTC time)

        Returns:
            Dict[str, Any]: Counts per status and the stuck rows
        """
        start_time = time.time()
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.stuck_age

        store = PaymentTransactionStore(db, payment_gateway_id=self.payment_gateway_id)
        rows = await store.list_stuck(cutoff, STUCK_STATUSES)

        counts = {status.value: 0 for status in STUCK_STATUSES}
        transactions: List[Dict[str, Any]] = []
        for row in rows:
            status = PaymentStatus.parse(row.status)
            counts[status.value] += 1
            metadata = row.metadata_json or {}
            entry = {
                "transaction_id": row.id,
                "gateway_transaction_id": row.gateway_transaction_id,
                "status": status.value,
                "user_id": row.user_id,
                "tokens_to_award": row.tokens_to_award,
                "stripe_event_id": metadata.get("stripe_event_id"),
                "last_error": metadata.get("last_error"),
                "updated_at": row.updated_at.isoformat() if row.updated_at else None,
            }
            transactions.append(entry)
            logger.critical(
                "stuck_payment_transaction",
                payment_transaction_id=row.id,
                gateway_transaction_id=row.gateway_transaction_id,
                status=status.value,
                stripe_event_id=entry["stripe_event_id"],
                last_error=entry["last_error"],
            )

        duration = time.time() - start_time
        metrics.set_reconciliation_metrics(counts, duration)

        logger.info(
            "reconciliation_scan_completed",
            stuck_total=len(transactions),
            cutoff=cutoff.isoformat(),
            duration_seconds=duration,
        )
        return {
            "scanned_at": now.isoformat(),
            "cutoff": cutoff.isoformat(),
            "stuck_total": len(transactions),
            "counts": counts,
            "transactions": transactions,
        }

    async def run(self) -> Dict[str, Any]:
        """Run one scan with its own session."""
        session_factory = get_session_factory()
        async with session_factory() as db:
            return await self.find_stuck_transactions(db)
