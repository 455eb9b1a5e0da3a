"""Core reconciliation logic."""
from .confirmation import PaymentConfirmation
from .exceptions import ReconciliationError
from .states import PaymentStatus, TransitionResult

__all__ = [
    "PaymentConfirmation",
    "PaymentStatus",
    "ReconciliationError",
    "TransitionResult",
]
