"""Booking state machine.

The transition table is the single source of truth for which edges exist and
which actor role may drive each one. Ownership (is this *the* pro or customer
of the booking) is checked by the booking service, not here.
"""

from enum import Enum

from visitpay.core.exceptions import InvalidTransition


class BookingStatus(str, Enum):
    """Lifecycle states of a service visit."""

    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ON_THE_WAY = "on_the_way"
    IN_PROGRESS = "in_progress"
    COMPLETED_PENDING_PAYMENT = "completed_pending_payment"
    PAID = "paid"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    """Roles that may drive a transition."""

    CUSTOMER = "customer"
    PRO = "pro"
    ADMIN = "admin"
    SYSTEM = "system"


_PARTIES = frozenset({ActorRole.CUSTOMER, ActorRole.PRO})
_PRO = frozenset({ActorRole.PRO})
_SYSTEM = frozenset({ActorRole.SYSTEM})

BOOKING_TRANSITIONS: dict[BookingStatus, dict[BookingStatus, frozenset[ActorRole]]] = {
    BookingStatus.REQUESTED: {
        BookingStatus.ACCEPTED: _PRO,
        BookingStatus.DECLINED: _PRO,
        BookingStatus.CANCELLED: _PARTIES,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.ON_THE_WAY: _PRO,
        BookingStatus.COMPLETED_PENDING_PAYMENT: _PRO,
        BookingStatus.CANCELLED: _PARTIES,
    },
    BookingStatus.ON_THE_WAY: {
        BookingStatus.IN_PROGRESS: _PRO,
        BookingStatus.COMPLETED_PENDING_PAYMENT: _PRO,
        BookingStatus.CANCELLED: _PARTIES,
    },
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED_PENDING_PAYMENT: _PRO,
        BookingStatus.CANCELLED: _PARTIES,
    },
    BookingStatus.COMPLETED_PENDING_PAYMENT: {
        BookingStatus.PAID: _SYSTEM,
    },
    BookingStatus.PAID: {},
    BookingStatus.DECLINED: {},
    BookingStatus.CANCELLED: {},
}

TERMINAL_STATUSES = frozenset(
    status for status, edges in BOOKING_TRANSITIONS.items() if not edges
)

# A customer may place a payment hold only while the visit is live.
AUTHORIZABLE_STATUSES = frozenset(
    {BookingStatus.ACCEPTED, BookingStatus.ON_THE_WAY, BookingStatus.IN_PROGRESS}
)

# Legacy spellings still sent by older clients.
STATUS_ALIASES = {
    "pending": BookingStatus.REQUESTED,
    "pro_en_route": BookingStatus.ON_THE_WAY,
    "awaiting_payment": BookingStatus.COMPLETED_PENDING_PAYMENT,
}


def parse_status(value: str) -> BookingStatus:
    """Parse a status string, accepting legacy aliases."""
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    return BookingStatus(value)


def is_valid_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, {})


def can_transition(current: BookingStatus, target: BookingStatus, actor: ActorRole) -> bool:
    """Pure check: edge exists and ``actor`` holds a role allowed to drive it."""
    return actor in BOOKING_TRANSITIONS.get(current, {}).get(target, frozenset())


def assert_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not is_valid_transition(current, target):
        raise InvalidTransition(current.value, target.value)
