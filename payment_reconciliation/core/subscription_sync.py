"""Bring user_subscriptions in line with the gateway's subscription objects."""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.exceptions import SyncError
from payment_reconciliation.core.plan_resolver import PlanRef
from payment_reconciliation.database.models import UserSubscription
from payment_reconciliation.integrations.stripe_client import (
    GatewaySubscription,
    StripeError,
    StripeGatewayClient,
)

logger = structlog.get_logger(__name__)


class SubscriptionSynchronizer:
    """
    Upserts user_subscriptions keyed on stripe_subscription_id.

    A failure here never rolls back a payment transaction; callers log it at
    critical severity because it leaves the subscription view stale.
    """

    def __init__(self, db: AsyncSession, gateway: StripeGatewayClient) -> None:
        self.db = db
        self.gateway = gateway

    async def _find(self, stripe_subscription_id: str) -> Optional[UserSubscription]:
        result = await self.db.execute(
            select(UserSubscription)
            .where(UserSubscription.stripe_subscription_id == stripe_subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_user_id(self, stripe_customer_id: str) -> Optional[str]:
        """Map a gateway customer to the internal user through any of their subscriptions."""
        result = await self.db.execute(
            select(UserSubscription.user_id)
            .where(UserSubscription.stripe_customer_id == stripe_customer_id)
            .order_by(UserSubscription.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def sync(
        self,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        plan_ref: Optional[PlanRef] = None,
        user_id: Optional[str] = None,
        subscription: Optional[GatewaySubscription] = None,
        create_if_missing: bool = True,
    ) -> Optional[UserSubscription]:
        """
        Upsert the internal subscription from the gateway's view.

        Args:
            stripe_subscription_id: Gateway subscription id (upsert key)
            stripe_customer_id: Gateway customer id
            plan_ref: Plan to link, when resolved
            user_id: Owner, required to create a missing row
            subscription: Already-fetched gateway subscription; fetched when None
            create_if_missing: Insert when no row exists yet

        Returns:
            The upserted row, or None when the row is missing and could not be
            created (no user, or create_if_missing is False).

        Raises:
            SyncError: Gateway fetch or datastore write failed
        """
        if subscription is None:
            try:
                subscription = await self.gateway.retrieve_subscription(stripe_subscription_id)
            except StripeError as e:
                raise SyncError(
                    f"Failed to fetch subscription {stripe_subscription_id}: {e}",
                    cause=e,
                    stripe_subscription_id=stripe_subscription_id,
                ) from e

        try:
            row = await self._find(stripe_subscription_id)
            if row is None:
                if not create_if_missing or user_id is None:
                    logger.warning(
                        "subscription_row_missing",
                        stripe_subscription_id=stripe_subscription_id,
                        stripe_customer_id=stripe_customer_id,
                    )
                    return None
                row = UserSubscription(
                    user_id=user_id,
                    stripe_subscription_id=stripe_subscription_id,
                )
                self.db.add(row)

            row.stripe_customer_id = stripe_customer_id or subscription.customer_id or row.stripe_customer_id
            row.status = subscription.status
            row.cancel_at_period_end = subscription.cancel_at_period_end
            if subscription.current_period_start is not None:
                row.current_period_start = subscription.current_period_start
            if subscription.current_period_end is not None:
                row.current_period_end = subscription.current_period_end
            if plan_ref is not None:
                row.plan_id = plan_ref.plan_id

            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise SyncError(
                f"Failed to upsert subscription {stripe_subscription_id}: {e}",
                cause=e,
                stripe_subscription_id=stripe_subscription_id,
            ) from e

        logger.info(
            "subscription_synced",
            stripe_subscription_id=stripe_subscription_id,
            status=subscription.status,
            plan_id=plan_ref.plan_id if plan_ref else None,
        )
        return row

    async def mark_status(
        self,
        stripe_subscription_id: str,
        status: str,
        cancel_at_period_end: bool = False,
    ) -> bool:
        """
        Set the status of an existing row without a gateway round-trip.

        Returns:
            False when no row exists for the subscription.

        Raises:
            SyncError: Datastore write failed
        """
        try:
            row = await self._find(stripe_subscription_id)
            if row is None:
                logger.warning(
                    "subscription_row_missing",
                    stripe_subscription_id=stripe_subscription_id,
                    status=status,
                )
                return False
            row.status = status
            row.cancel_at_period_end = cancel_at_period_end
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise SyncError(
                f"Failed to update subscription {stripe_subscription_id}: {e}",
                cause=e,
                stripe_subscription_id=stripe_subscription_id,
            ) from e

        logger.info(
            "subscription_status_updated",
            stripe_subscription_id=stripe_subscription_id,
            status=status,
        )
        return True
