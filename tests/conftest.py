"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import os
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

# Settings are read at import time by the app module
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.handlers import PaymentEventHandlers
from payment_reconciliation.core.plan_resolver import PlanResolver
from payment_reconciliation.core.subscription_sync import SubscriptionSynchronizer
from payment_reconciliation.core.transaction_store import PaymentTransactionStore
from payment_reconciliation.database.models import (
    Base,
    SubscriptionPlan,
    TokenWallet,
    UserSubscription,
)
from payment_reconciliation.integrations.stripe_client import (
    GatewaySubscription,
    StripeGatewayClient,
)
from payment_reconciliation.integrations.token_ledger import SqlTokenLedger

get_settings.cache_clear()


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond in-memory SQLite")
    config.addinivalue_line("markers", "integration: tests that exercise several components")
    config.addinivalue_line("markers", "race: tests for concurrent delivery behaviour")


class CountingLedger(SqlTokenLedger):
    """SQL ledger that remembers every credit request."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(db)
        self.calls: List[Dict[str, Any]] = []

    async def record_transaction(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return await super().record_transaction(**kwargs)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway_subscription() -> GatewaySubscription:
    return GatewaySubscription(
        id="sub_1",
        status="active",
        customer_id="cus_1",
        price_id="price_basic",
        current_period_start=datetime(2024, 1, 1, tzinfo=timezone.utc),
        current_period_end=datetime(2024, 2, 1, tzinfo=timezone.utc),
        cancel_at_period_end=False,
    )


@pytest.fixture
def gateway(gateway_subscription: GatewaySubscription) -> AsyncMock:
    """Stripe client double; every lookup succeeds unless a test overrides it."""
    mock_gateway = AsyncMock(spec=StripeGatewayClient)
    mock_gateway.retrieve_subscription.return_value = gateway_subscription
    mock_gateway.retrieve_checkout_session.return_value = {"id": "cs_1", "metadata": {}}
    return mock_gateway


@pytest_asyncio.fixture
async def seeded_db(test_db: AsyncSession) -> AsyncSession:
    """
    Reference data:
    - user_1 with wallet_1 (balance 0) and subscription sub_1 for customer cus_1
    - plan price_basic -> item_basic, 500 tokens
    - plan price_tokens_100 -> item_tokens_100, 100 tokens, one-time
    """
    test_db.add_all(
        [
            TokenWallet(wallet_id="wallet_1", user_id="user_1", balance=0),
            UserSubscription(
                user_id="user_1",
                stripe_customer_id="cus_1",
                stripe_subscription_id="sub_1",
                status="active",
            ),
            SubscriptionPlan(
                id="plan_basic",
                stripe_price_id="price_basic",
                item_id_internal="item_basic",
                tokens_to_award=500,
                plan_type="subscription",
            ),
            SubscriptionPlan(
                id="plan_tokens_100",
                stripe_price_id="price_tokens_100",
                item_id_internal="item_tokens_100",
                tokens_to_award=100,
                plan_type="one_time_purchase",
            ),
        ]
    )
    await test_db.commit()
    return test_db


@pytest.fixture
def ledger(seeded_db: AsyncSession) -> CountingLedger:
    return CountingLedger(seeded_db)


@pytest.fixture
def store(seeded_db: AsyncSession) -> PaymentTransactionStore:
    return PaymentTransactionStore(seeded_db)


@pytest.fixture
def handlers(
    seeded_db: AsyncSession,
    store: PaymentTransactionStore,
    ledger: CountingLedger,
    gateway: AsyncMock,
) -> PaymentEventHandlers:
    return PaymentEventHandlers(
        store=store,
        ledger=ledger,
        resolver=PlanResolver(seeded_db, gateway),
        synchronizer=SubscriptionSynchronizer(seeded_db, gateway),
        gateway=gateway,
    )


@pytest.fixture
def checkout_event() -> Callable[..., Dict[str, Any]]:
    """Factory for checkout.session.completed events."""

    def build(
        event_id: str = "evt_checkout_1",
        session_id: str = "cs_1",
        mode: str = "payment",
        internal_payment_id: Optional[str] = "ptxn_1",
        subscription: Optional[str] = None,
        customer: Optional[str] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = dict(extra_metadata or {})
        if internal_payment_id is not None:
            metadata["internal_payment_id"] = internal_payment_id
        return {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "mode": mode,
                    "metadata": metadata,
                    "subscription": subscription,
                    "customer": customer,
                }
            },
        }

    return build


@pytest.fixture
def invoice_event() -> Callable[..., Dict[str, Any]]:
    """Factory for invoice.payment_succeeded / invoice.payment_failed events."""

    def build(
        event_id: str = "evt_invoice_1",
        invoice_id: str = "in_1",
        customer: Optional[str] = "cus_1",
        subscription: Optional[str] = "sub_1",
        price_id: Optional[str] = "price_basic",
        metadata: Optional[Dict[str, Any]] = None,
        line_metadata: Optional[Dict[str, Any]] = None,
        event_type: str = "invoice.payment_succeeded",
        amount: int = 1999,
    ) -> Dict[str, Any]:
        line: Dict[str, Any] = {"id": "il_1", "metadata": line_metadata or {}}
        if price_id is not None:
            line["price"] = {"id": price_id}
        return {
            "id": event_id,
            "type": event_type,
            "data": {
                "object": {
                    "id": invoice_id,
                    "object": "invoice",
                    "customer": customer,
                    "subscription": subscription,
                    "amount_paid": amount,
                    "amount_due": amount,
                    "currency": "usd",
                    "billing_reason": "subscription_cycle",
                    "attempt_count": 1,
                    "metadata": metadata or {},
                    "lines": {"data": [line]},
                }
            },
        }

    return build


@pytest.fixture
def sign_payload() -> Callable[..., str]:
    """Build a Stripe-Signature header for a payload."""

    def sign(payload: bytes, secret: Optional[str] = None, timestamp: Optional[int] = None) -> str:
        secret = secret or get_settings().stripe_webhook_secret
        timestamp = timestamp or int(time.time())
        signed_payload = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return sign
