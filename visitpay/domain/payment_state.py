"""Payment state machine.

Tracked independently of the booking status: payment can lag or fail while
the work-completion record stays intact.
"""

from enum import Enum


class PaymentState(str, Enum):
    """Local view of the gateway hold."""

    NONE = "NONE"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    RELEASED = "RELEASED"


PAYMENT_TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.NONE: frozenset(
        {PaymentState.AUTHORIZED, PaymentState.FAILED, PaymentState.RELEASED}
    ),
    PaymentState.AUTHORIZED: frozenset(
        {PaymentState.CAPTURED, PaymentState.FAILED, PaymentState.RELEASED}
    ),
    PaymentState.FAILED: frozenset({PaymentState.CAPTURED, PaymentState.RELEASED}),
    PaymentState.CAPTURED: frozenset(),
    PaymentState.RELEASED: frozenset(),
}


def sources_for(target: PaymentState) -> frozenset[PaymentState]:
    """States from which ``target`` may be reached."""
    return frozenset(
        source for source, targets in PAYMENT_TRANSITIONS.items() if target in targets
    )
