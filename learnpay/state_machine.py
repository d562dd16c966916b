"""Canonical payment intent states and the transitions allowed between them."""

from enum import Enum

from learnpay.errors import ConflictError


class PaymentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


_PRE_SUCCESS = (
    PaymentStatus.REQUIRES_PAYMENT_METHOD,
    PaymentStatus.REQUIRES_ACTION,
    PaymentStatus.PROCESSING,
)

FINAL_STATES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELED, PaymentStatus.REFUNDED})
REFUNDABLE_STATES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})
SETTLED_STATES = frozenset(
    {PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
)


def _forward(index):
    return set(_PRE_SUCCESS[index + 1:]) | {
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    }


TRANSITIONS = {
    PaymentStatus.REQUIRES_PAYMENT_METHOD: frozenset(_forward(0)),
    PaymentStatus.REQUIRES_ACTION: frozenset(_forward(1)),
    PaymentStatus.PROCESSING: frozenset(_forward(2)),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(
        {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(current, target) -> bool:
    return PaymentStatus(target) in TRANSITIONS[PaymentStatus(current)]


def assert_transition(current, target):
    current, target = PaymentStatus(current), PaymentStatus(target)
    if target not in TRANSITIONS[current]:
        raise ConflictError(
            f"Payment cannot move from {current.value} to {target.value}",
            code="INVALID_TRANSITION",
            details={"from": current.value, "to": target.value},
        )
    return target


def status_after_refund(amount_total: int, amount_refunded: int) -> PaymentStatus:
    if amount_refunded >= amount_total:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PARTIALLY_REFUNDED
