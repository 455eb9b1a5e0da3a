"""
Reconciliation background worker.

Runs the stuck-transaction scan on a fixed interval.
"""
import argparse
import asyncio
import signal
from typing import Optional

import structlog

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.reconciliation import ReconciliationEngine
from payment_reconciliation.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_scan(engine: Optional[ReconciliationEngine] = None) -> dict:
    """Run one scan and log a summary."""
    logger.info("reconciliation_scan_started")
    engine = engine or ReconciliationEngine()
    result = await engine.run()

    if result["stuck_total"] > 0:
        logger.warning(
            "stuck_transactions_detected",
            stuck_total=result["stuck_total"],
            counts=result["counts"],
        )
    return result


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between scans (defaults to settings)
    """
    setup_logging()
    interval = interval_seconds or get_settings().reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    engine = ReconciliationEngine()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig.name)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        while not stop.is_set():
            try:
                await run_reconciliation_scan(engine)
            except Exception as e:
                # One failed scan must not stop the worker
                logger.error("reconciliation_execution_error", error=str(e))

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Stuck payment transaction scanner")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between scans"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
