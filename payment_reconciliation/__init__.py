"""Stripe webhook reconciliation engine for the prepaid token ledger."""

__version__ = "1.0.0"
