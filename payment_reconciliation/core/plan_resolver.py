"""Map a gateway price, subscription or internal item id to its award policy."""
from dataclasses import dataclass
from typing import Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.exceptions import GatewayLookupFailed, PlanNotFound
from payment_reconciliation.database.models import SubscriptionPlan
from payment_reconciliation.integrations.stripe_client import (
    GatewaySubscription,
    StripeError,
    StripeGatewayClient,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PlanRef:
    """Award policy of one plan."""

    plan_id: str
    stripe_price_id: str
    item_id_internal: str
    tokens_to_award: int
    plan_type: str

    @classmethod
    def from_model(cls, plan: SubscriptionPlan) -> "PlanRef":
        return cls(
            plan_id=plan.id,
            stripe_price_id=plan.stripe_price_id,
            item_id_internal=plan.item_id_internal,
            tokens_to_award=int(plan.tokens_to_award or 0),
            plan_type=plan.plan_type,
        )


class PlanResolver:
    """
    Read-only plan lookups.

    Nothing here is retried: a PlanNotFound or GatewayLookupFailed is handed
    back to the event handler, and the gateway redelivers the event later.
    """

    def __init__(self, db: AsyncSession, gateway: StripeGatewayClient) -> None:
        self.db = db
        self.gateway = gateway

    async def _lookup(self, column, value: str) -> Optional[SubscriptionPlan]:
        result = await self.db.execute(
            select(SubscriptionPlan).where(column == value, SubscriptionPlan.active.is_(True))
        )
        return result.scalars().first()

    async def resolve_by_price(self, price_id: str) -> PlanRef:
        """
        Resolve a Stripe price id.

        Raises:
            PlanNotFound: No subscription_plans row has this price id
        """
        plan = await self._lookup(SubscriptionPlan.stripe_price_id, price_id)
        if plan is None:
            logger.warning("plan_not_found", stripe_price_id=price_id)
            raise PlanNotFound(
                f"No subscription plan for price {price_id}", stripe_price_id=price_id
            )
        return PlanRef.from_model(plan)

    async def resolve_by_item_id(self, item_id_internal: str) -> PlanRef:
        """
        Resolve the internal item id stored when the checkout session was created.

        Raises:
            PlanNotFound: No subscription_plans row has this item id
        """
        plan = await self._lookup(SubscriptionPlan.item_id_internal, item_id_internal)
        if plan is None:
            logger.warning("plan_not_found", item_id_internal=item_id_internal)
            raise PlanNotFound(
                f"No subscription plan for item {item_id_internal}",
                item_id_internal=item_id_internal,
            )
        return PlanRef.from_model(plan)

    async def fetch_subscription(self, subscription_id: str) -> GatewaySubscription:
        """
        Fetch a subscription from the gateway.

        Raises:
            GatewayLookupFailed: The gateway call errored
        """
        try:
            return await self.gateway.retrieve_subscription(subscription_id)
        except StripeError as e:
            raise GatewayLookupFailed(
                f"Failed to retrieve subscription {subscription_id}: {e}",
                cause=e,
                stripe_subscription_id=subscription_id,
            ) from e

    async def resolve_by_subscription(
        self, subscription_id: str
    ) -> Tuple[PlanRef, GatewaySubscription]:
        """
        Resolve the plan a gateway subscription is currently billed on.

        Args:
            subscription_id: Stripe subscription id

        Returns:
            Tuple of the plan and the fetched subscription, so callers can
            reuse the subscription for synchronization.

        Raises:
            GatewayLookupFailed: The gateway errored or returned no price
            PlanNotFound: The price has no matching plan
        """
        subscription = await self.fetch_subscription(subscription_id)
        if not subscription.price_id:
            raise GatewayLookupFailed(
                f"Subscription {subscription_id} has no price on its first item",
                stripe_subscription_id=subscription_id,
            )
        plan = await self.resolve_by_price(subscription.price_id)
        return plan, subscription
