"""SQLAlchemy database models for payment reconciliation."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentTransaction(Base):
    """
    One row per internal attempt to process a gateway event.

    The (payment_gateway_id, gateway_transaction_id) pair is unique, so two
    concurrent deliveries of the same event cannot both insert a row.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    target_wallet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_gateway_id: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tokens_to_award: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    amount_requested_fiat: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    metadata_json: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JsonType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "payment_gateway_id",
            "gateway_transaction_id",
            name="uq_payment_transactions_gateway_txn",
        ),
        CheckConstraint("tokens_to_award >= 0", name="non_negative_tokens"),
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING_RENEWAL', 'COMPLETED', "
            "'TOKEN_AWARD_FAILED', 'FAILED', 'succeeded')",
            name="valid_payment_status",
        ),
        Index("idx_payment_transactions_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, gateway_txn={self.gateway_transaction_id}, "
            f"status={self.status}, tokens={self.tokens_to_award})>"
        )


class SubscriptionPlan(Base):
    """Reference data mapping a Stripe price to the tokens it awards."""

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    stripe_price_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    item_id_internal: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tokens_to_award: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False, default="subscription")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "plan_type IN ('subscription', 'one_time_purchase')", name="valid_plan_type"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionPlan(price={self.stripe_price_id}, "
            f"item={self.item_id_internal}, tokens={self.tokens_to_award})>"
        )


class UserSubscription(Base):
    """Internal view of a Stripe subscription, keyed on stripe_subscription_id."""

    __tablename__ = "user_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(user_id={self.user_id}, "
            f"stripe_subscription_id={self.stripe_subscription_id}, status={self.status})>"
        )


class TokenWallet(Base):
    """Prepaid token balance owned by a user."""

    __tablename__ = "token_wallets"

    wallet_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(30, 0), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(20), nullable=False, default="AI_TOKEN")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="non_negative_balance"),)

    def __repr__(self) -> str:
        return f"<TokenWallet(wallet_id={self.wallet_id}, balance={self.balance})>"


class TokenWalletTransaction(Base):
    """
    Append-only ledger entry.

    Amounts are string-encoded integers; idempotency_key is unique so a
    replayed credit can never be appended twice.
    """

    __tablename__ = "token_wallet_transactions"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    wallet_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[str] = mapped_column(String(40), nullable=False)
    balance_after_txn: Mapped[str] = mapped_column(String(40), nullable=False)
    recorded_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    related_entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    notes: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<TokenWalletTransaction(id={self.transaction_id}, wallet={self.wallet_id}, "
            f"type={self.transaction_type}, amount={self.amount})>"
        )
