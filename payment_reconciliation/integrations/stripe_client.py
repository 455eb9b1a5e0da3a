"""
Stripe API client for the reconciliation engine.

Implements:
- Subscription and checkout-session lookups
- Circuit breaker pattern
- Error classification

Calls are single-attempt: retries happen through gateway event redelivery,
never inside this client.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or plain dict, tolerating absence."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default
    return default if value is None else value


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass(frozen=True)
class GatewaySubscription:
    """The parts of a Stripe subscription the engine reconciles."""

    id: str
    status: str
    customer_id: Optional[str]
    price_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False

    @classmethod
    def from_stripe(cls, subscription: Any) -> "GatewaySubscription":
        """
        Normalize a Stripe subscription.

        Newer API versions moved the billing period from the subscription onto
        its items, so both places are read.
        """
        items = stripe_field(stripe_field(subscription, "items"), "data", [])
        first_item = items[0] if items else None
        price_id = stripe_field(stripe_field(first_item, "price"), "id")

        period_start = stripe_field(subscription, "current_period_start") or stripe_field(
            first_item, "current_period_start"
        )
        period_end = stripe_field(subscription, "current_period_end") or stripe_field(
            first_item, "current_period_end"
        )

        customer = stripe_field(subscription, "customer")
        if customer is not None and not isinstance(customer, str):
            customer = stripe_field(customer, "id")

        return cls(
            id=stripe_field(subscription, "id"),
            status=stripe_field(subscription, "status", "unknown"),
            customer_id=customer,
            price_id=price_id,
            current_period_start=_from_timestamp(period_start),
            current_period_end=_from_timestamp(period_end),
            cancel_at_period_end=bool(stripe_field(subscription, "cancel_at_period_end", False)),
        )


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeGatewayClient:
    """
    Read-only Stripe client used by the event handlers.

    Features:
    - Circuit breaker pattern
    - Error classification
    - Normalized subscription objects
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout_seconds,
        )

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, operation: str, error: stripe.StripeError) -> None:
        """
        Log, count and re-raise a Stripe error as a classified StripeError.

        Raises:
            StripeError: Classified error
        """
        error_type = self._classify_error(error)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        metrics.record_stripe_api_error(error_type.value)

        raise StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        ) from error

    def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        try:
            result = self.circuit_breaker.call(func, *args, **kwargs)
        except stripe.StripeError as e:
            metrics.record_stripe_api_call(operation, "error", time.time() - start_time)
            self._handle_stripe_error(operation, e)
            raise  # For type checker
        metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
        return result

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        """
        Retrieve a subscription by ID.

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            GatewaySubscription: Normalized subscription

        Raises:
            StripeError: If retrieval fails
        """
        logger.info("retrieving_subscription", stripe_subscription_id=subscription_id)
        subscription = self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return GatewaySubscription.from_stripe(subscription)

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """
        Retrieve a checkout session and return its metadata and mode.

        Raises:
            StripeError: If retrieval fails
        """
        logger.info("retrieving_checkout_session", checkout_session_id=session_id)
        session = self._call(
            "retrieve_checkout_session", stripe.checkout.Session.retrieve, session_id
        )
        metadata = stripe_field(session, "metadata", {})
        return {
            "id": stripe_field(session, "id", session_id),
            "mode": stripe_field(session, "mode"),
            "metadata": {key: metadata[key] for key in metadata.keys()} if metadata else {},
        }

    async def ping(self) -> None:
        """Cheap authenticated call used by the health check."""
        self._call("ping", stripe.Balance.retrieve)
