"""
Ordered chain of token-count sources for a paid invoice.

Sources are tried in order; the first that yields a count wins. When none
does, the invoice is still recorded with zero tokens.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import structlog

from payment_reconciliation.core.plan_resolver import PlanRef, PlanResolver
from payment_reconciliation.integrations.stripe_client import GatewaySubscription, stripe_field

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenAward:
    tokens: int
    source: str
    plan: Optional[PlanRef] = None
    subscription: Optional[GatewaySubscription] = None


def first_line_item(invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    items = stripe_field(stripe_field(invoice, "lines"), "data", [])
    return items[0] if items else None


def line_item_price_id(item: Optional[Dict[str, Any]]) -> Optional[str]:
    """Price id of a line item, in the classic or the pricing-details shape."""
    price = stripe_field(item, "price")
    if isinstance(price, str):
        return price
    price_id = stripe_field(price, "id")
    if price_id:
        return price_id
    return stripe_field(stripe_field(stripe_field(item, "pricing"), "price_details"), "price")


def line_item_subscription_id(item: Optional[Dict[str, Any]]) -> Optional[str]:
    subscription = stripe_field(item, "subscription")
    if subscription:
        return subscription if isinstance(subscription, str) else stripe_field(subscription, "id")
    details = stripe_field(stripe_field(item, "parent"), "subscription_item_details")
    return stripe_field(details, "subscription")


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """
    Subscription an invoice belongs to.

    Older API versions carry it at the top level, newer ones under
    parent.subscription_details; the first line item is the last resort.
    """
    subscription = stripe_field(invoice, "subscription")
    if subscription:
        return subscription if isinstance(subscription, str) else stripe_field(subscription, "id")
    details = stripe_field(stripe_field(invoice, "parent"), "subscription_details")
    subscription = stripe_field(details, "subscription")
    if subscription:
        return subscription
    return line_item_subscription_id(first_line_item(invoice))


def _parse_tokens(value: Any, where: str, invoice_id: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        tokens = int(value)
    except (TypeError, ValueError):
        logger.warning(
            "invalid_tokens_metadata", location=where, value=str(value), invoice_id=invoice_id
        )
        return None
    if tokens < 0:
        logger.warning(
            "negative_tokens_metadata", location=where, value=tokens, invoice_id=invoice_id
        )
        return None
    return tokens


class InvoiceMetadataSource:
    name = "invoice_metadata"

    async def resolve(self, invoice: Dict[str, Any]) -> Optional[TokenAward]:
        value = stripe_field(stripe_field(invoice, "metadata"), "tokens_to_award")
        tokens = _parse_tokens(value, self.name, stripe_field(invoice, "id"))
        return None if tokens is None else TokenAward(tokens=tokens, source=self.name)


class LineItemMetadataSource:
    name = "line_item_metadata"

    async def resolve(self, invoice: Dict[str, Any]) -> Optional[TokenAward]:
        item = first_line_item(invoice)
        value = stripe_field(stripe_field(item, "metadata"), "tokens_to_award")
        tokens = _parse_tokens(value, self.name, stripe_field(invoice, "id"))
        return None if tokens is None else TokenAward(tokens=tokens, source=self.name)


class PlanLookupSource:
    """
    Resolve through subscription_plans.

    Uses the line item's price id when present, otherwise fetches the
    subscription from the gateway. PlanNotFound and GatewayLookupFailed
    propagate to the caller.
    """

    name = "plan_lookup"

    def __init__(self, resolver: PlanResolver) -> None:
        self.resolver = resolver

    async def resolve(self, invoice: Dict[str, Any]) -> Optional[TokenAward]:
        price_id = line_item_price_id(first_line_item(invoice))
        if price_id:
            plan = await self.resolver.resolve_by_price(price_id)
            return TokenAward(tokens=plan.tokens_to_award, source=self.name, plan=plan)

        subscription_id = invoice_subscription_id(invoice)
        if subscription_id:
            plan, subscription = await self.resolver.resolve_by_subscription(subscription_id)
            return TokenAward(
                tokens=plan.tokens_to_award,
                source=self.name,
                plan=plan,
                subscription=subscription,
            )
        return None


class TokenSourceChain:
    def __init__(self, sources: Sequence[Any]) -> None:
        self.sources: List[Any] = list(sources)

    @classmethod
    def default(cls, resolver: PlanResolver) -> "TokenSourceChain":
        return cls([InvoiceMetadataSource(), LineItemMetadataSource(), PlanLookupSource(resolver)])

    async def resolve(self, invoice: Dict[str, Any]) -> TokenAward:
        """
        Run the sources in order.

        Raises:
            PlanNotFound: From the plan lookup source
            GatewayLookupFailed: From the plan lookup source
        """
        for source in self.sources:
            award = await source.resolve(invoice)
            if award is not None:
                logger.debug(
                    "tokens_resolved",
                    source=award.source,
                    tokens=award.tokens,
                    invoice_id=stripe_field(invoice, "id"),
                )
                return award

        logger.warning(
            "no_token_source_found",
            invoice_id=stripe_field(invoice, "id"),
            tokens=0,
        )
        return TokenAward(tokens=0, source="default")
