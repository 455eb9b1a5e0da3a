"""
Pydantic schemas for API responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentConfirmationResponse(BaseModel):
    """Result of processing one Stripe webhook delivery."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "success": True,
                    "transactionId": "ptxn_1",
                    "paymentGatewayTransactionId": "cs_test_123",
                    "tokensAwarded": 100,
                }
            ]
        },
    )

    success: bool = Field(..., description="Whether the event was reconciled")
    transaction_id: Optional[str] = Field(
        default=None, alias="transactionId", description="Internal payment transaction ID"
    )
    payment_gateway_transaction_id: Optional[str] = Field(
        default=None,
        alias="paymentGatewayTransactionId",
        description="Stripe session or invoice ID",
    )
    tokens_awarded: Optional[int] = Field(
        default=None, alias="tokensAwarded", description="Tokens credited for this payment"
    )
    error: Optional[str] = Field(default=None, description="Error code on failure")
    message: Optional[str] = Field(default=None, description="Human-readable detail")


class StuckTransaction(BaseModel):
    transaction_id: str
    gateway_transaction_id: Optional[str] = None
    status: str
    user_id: Optional[str] = None
    tokens_to_award: int
    stripe_event_id: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[str] = None


class ReconciliationResponse(BaseModel):
    """Response schema for a stuck-transaction scan."""

    scanned_at: str = Field(..., description="Scan time (ISO 8601)")
    cutoff: str = Field(..., description="Rows last updated before this time were considered")
    stuck_total: int = Field(..., description="Number of stuck transactions")
    counts: Dict[str, int] = Field(..., description="Stuck transactions per status")
    transactions: List[StuckTransaction] = Field(..., description="The stuck transactions")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
