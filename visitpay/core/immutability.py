"""Append-only enforcement for the booking audit trail."""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import event, inspect

from visitpay.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


class ImmutabilityViolationError(ValidationError):
    """Raised when attempting to rewrite or delete audit records."""

    code = "immutability_violation"

    def __init__(self, model_name: str, operation: str, record_id: str):
        self.model_name = model_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(
            f"Immutability violation: Cannot {operation} {model_name} record {record_id}. "
            "Bookings are never deleted and status history is append-only."
        )


def _log_immutability_violation(model_name: str, operation: str, record_id: str) -> None:
    """Log immutability violation for audit purposes."""
    logger.error(
        f"IMMUTABILITY_VIOLATION: Attempted to {operation} {model_name} "
        f"record_id={record_id} at {datetime.now(UTC).isoformat()}"
    )


def assert_history_append(
    record_id: str,
    previous: list[dict[str, Any]],
    updated: list[dict[str, Any]],
) -> None:
    """Updated history must be the previous history plus exactly one entry."""
    if len(updated) != len(previous) + 1 or updated[: len(previous)] != previous:
        _log_immutability_violation("Booking.status_history", "REWRITE", record_id)
        raise ImmutabilityViolationError("Booking.status_history", "REWRITE", record_id)


def register_immutability_enforcement() -> None:
    """Register SQLAlchemy event listeners for ORM-level writes.

    Conditional writes issued by the ledger go through Core and are checked
    with :func:`assert_history_append` instead.
    """
    from visitpay.models.booking import Booking

    if event.contains(Booking, "before_delete", prevent_booking_delete):
        return

    event.listen(Booking, "before_delete", prevent_booking_delete)
    event.listen(Booking, "before_update", prevent_history_rewrite)

    logger.info("Immutability enforcement registered for bookings")


def prevent_booking_delete(mapper, connection, target) -> None:
    """Bookings end in terminal states; rows are never removed."""
    _log_immutability_violation("Booking", "DELETE", str(target.id))
    raise ImmutabilityViolationError("Booking", "DELETE", str(target.id))


def prevent_history_rewrite(mapper, connection, target) -> None:
    """Only appends to status_history may be flushed."""
    history = inspect(target).attrs.status_history.history
    if not history.has_changes() or not history.deleted:
        return

    previous = list(history.deleted[0] or [])
    updated = list(target.status_history or [])
    if updated[: len(previous)] != previous:
        _log_immutability_violation("Booking.status_history", "REWRITE", str(target.id))
        raise ImmutabilityViolationError("Booking.status_history", "REWRITE", str(target.id))
