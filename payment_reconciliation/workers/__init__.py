"""Background workers."""
from .reconciliation_worker import run_reconciliation_scan, start_reconciliation_worker

__all__ = ["run_reconciliation_scan", "start_reconciliation_worker"]
