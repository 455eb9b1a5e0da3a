"""
PaymentConfirmation: the single externally observable result of every handler.

Callers log, alert and retry on this shape, so ``to_dict`` keys are stable:
success, transactionId, paymentGatewayTransactionId, tokensAwarded, error,
message. Optional keys are omitted when unset.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from payment_reconciliation.core.exceptions import ReconciliationError


@dataclass(frozen=True)
class PaymentConfirmation:
    """Result of processing one gateway event."""

    success: bool
    transaction_id: Optional[str] = None
    payment_gateway_transaction_id: Optional[str] = None
    tokens_awarded: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None
    # HTTP boundary hints, not part of the serialized contract
    retryable: bool = False
    status_code: int = 200

    @classmethod
    def ok(
        cls,
        transaction_id: Optional[str],
        tokens_awarded: Optional[int] = None,
        message: Optional[str] = None,
        payment_gateway_transaction_id: Optional[str] = None,
    ) -> "PaymentConfirmation":
        return cls(
            success=True,
            transaction_id=transaction_id,
            payment_gateway_transaction_id=payment_gateway_transaction_id,
            tokens_awarded=tokens_awarded,
            message=message,
        )

    @classmethod
    def failed(
        cls,
        error: ReconciliationError,
        transaction_id: Optional[str],
        tokens_awarded: Optional[int] = None,
        payment_gateway_transaction_id: Optional[str] = None,
    ) -> "PaymentConfirmation":
        """Build a failure result from a taxonomy error."""
        return cls(
            success=False,
            transaction_id=transaction_id,
            payment_gateway_transaction_id=payment_gateway_transaction_id,
            tokens_awarded=tokens_awarded,
            error=error.error_code,
            message=error.message,
            retryable=error.retryable,
            status_code=error.http_status,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "transactionId": self.transaction_id,
        }
        if self.payment_gateway_transaction_id is not None:
            result["paymentGatewayTransactionId"] = self.payment_gateway_transaction_id
        if self.tokens_awarded is not None:
            result["tokensAwarded"] = self.tokens_awarded
        if self.error is not None:
            result["error"] = self.error
        if self.message is not None:
            result["message"] = self.message
        return result
