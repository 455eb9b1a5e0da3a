"""Payment transaction states."""
from enum import Enum
from typing import Union


class PaymentStatus(str, Enum):
    """
    Status of a payment transaction.

    COMPLETED is the single terminal-success value; rows written with the
    legacy ``succeeded`` spelling are read as COMPLETED.
    """

    PENDING = "PENDING"
    PROCESSING_RENEWAL = "PROCESSING_RENEWAL"
    COMPLETED = "COMPLETED"
    TOKEN_AWARD_FAILED = "TOKEN_AWARD_FAILED"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, value: Union[str, "PaymentStatus"]) -> "PaymentStatus":
        if isinstance(value, cls):
            return value
        if value == LEGACY_SUCCESS_STATUS:
            return cls.COMPLETED
        return cls(value)

    @property
    def is_terminal_success(self) -> bool:
        return self is PaymentStatus.COMPLETED

    @property
    def is_in_flight(self) -> bool:
        return self in (PaymentStatus.PENDING, PaymentStatus.PROCESSING_RENEWAL)


LEGACY_SUCCESS_STATUS = "succeeded"

# Raw column values that count as terminal success
TERMINAL_SUCCESS_VALUES = (PaymentStatus.COMPLETED.value, LEGACY_SUCCESS_STATUS)


class TransitionResult(Enum):
    """Outcome of a scoped status update."""

    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class PlanType(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME_PURCHASE = "one_time_purchase"
