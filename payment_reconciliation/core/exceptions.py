"""
Error taxonomy for webhook reconciliation.

Every error carries a stable error code (used verbatim as the ``error`` field
of a PaymentConfirmation), an HTTP status for the webhook boundary, and a
retryable flag telling the caller whether a later redelivery may succeed.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """
    Base exception for all reconciliation errors.

    Args:
        message: Internal message (logged, and appended to the confirmation)
        error_code: Stable machine-readable code
        http_status: Status code for the webhook response
        retryable: Whether the gateway should redeliver the event
        **context: Structured context (event ids, transaction ids)
    """

    error_code = "ReconciliationError"
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        if retryable is not None:
            self.retryable = retryable
        self.cause = cause
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for logging and API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class VerificationFailed(ReconciliationError):
    """Webhook signature missing or invalid."""

    error_code = "VerificationFailed"
    http_status = 400


class TransactionNotFound(ReconciliationError):
    """No payment transaction to reconcile against."""

    error_code = "TransactionNotFound"
    http_status = 404


class UserNotFound(ReconciliationError):
    """
    No user mapped to the gateway customer.

    500 class: this is a data-integrity gap, not a client error.
    """

    error_code = "UserNotFound"
    http_status = 500


class WalletNotFound(ReconciliationError):
    error_code = "WalletNotFound"
    http_status = 404


class PlanNotFound(ReconciliationError):
    """No subscription_plans row for the gateway price or item."""

    error_code = "PlanNotFound"
    http_status = 404


class GatewayLookupFailed(ReconciliationError):
    """The gateway round-trip errored or returned no usable price."""

    error_code = "GatewayLookupFailed"
    http_status = 502


class RecordCreationFailed(ReconciliationError):
    error_code = "RecordCreationFailed"
    http_status = 500


class TransactionInProgress(ReconciliationError):
    """
    Another delivery already owns the row for this gateway transaction.

    Raised on a unique-key conflict; the existing row is attached so the
    caller can decide whether to reclaim it or defer.
    """

    error_code = "TransactionInProgress"
    http_status = 409
    retryable = True

    def __init__(self, message: str, existing: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.existing = existing


class LedgerError(ReconciliationError):
    """The token ledger refused or failed a credit. Wraps the underlying cause."""

    error_code = "LedgerError"
    http_status = 500


class FinalizationFailed(ReconciliationError):
    error_code = "FinalizationFailed"
    http_status = 500


class SyncError(ReconciliationError):
    """The internal subscription record could not be brought in line with the gateway."""

    error_code = "SyncError"
    http_status = 500
