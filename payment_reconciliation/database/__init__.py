"""Database package for payment reconciliation."""
from .connection import get_db, init_db
from .models import (
    Base,
    PaymentTransaction,
    SubscriptionPlan,
    TokenWallet,
    TokenWalletTransaction,
    UserSubscription,
)

__all__ = [
    "Base",
    "PaymentTransaction",
    "SubscriptionPlan",
    "TokenWallet",
    "TokenWalletTransaction",
    "UserSubscription",
    "get_db",
    "init_db",
]
