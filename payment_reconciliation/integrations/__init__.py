"""External integrations for payment reconciliation."""
from .stripe_client import GatewaySubscription, StripeError, StripeGatewayClient

__all__ = ["GatewaySubscription", "StripeError", "StripeGatewayClient"]
