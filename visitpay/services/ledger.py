"""Booking ledger: transactional persistence for bookings and their history.

Every mutation is a single conditional UPDATE. ``status`` only ever moves
forward through the transition table, so "status is still what I read" is
enough to guarantee nobody else appended to the history in between.
"""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitpay.core.exceptions import NotFoundError, ValidationError
from visitpay.core.immutability import assert_history_append
from visitpay.domain.booking_state import BookingStatus
from visitpay.domain.payment_state import PaymentState, sources_for
from visitpay.models.booking import Booking, ProcessedWebhookEvent, WebhookEventStatus

logger = logging.getLogger(__name__)

# Columns a status transition may set alongside status/history.
TRANSITION_FIELDS = frozenset(
    {
        "accepted_at",
        "on_the_way_at",
        "started_at",
        "completed_at",
        "paid_at",
        "declined_at",
        "cancelled_at",
        "payment_state",
    }
)


class WebhookClaim(str, Enum):
    """Answer to a webhook claim attempt."""

    CLAIMED = "claimed"
    DONE = "done"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class HistoryEntry:
    """One row of the status timeline."""

    status: BookingStatus
    at: datetime
    actor: str
    actor_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "at": self.at.isoformat(),
            "actor": self.actor,
            "actor_id": self.actor_id,
        }


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def stamp_entry(history: list[dict[str, Any]], entry: HistoryEntry) -> HistoryEntry:
    """Clamp ``entry.at`` so the timeline never goes backwards."""
    if not history:
        return entry
    last_at = _as_utc(datetime.fromisoformat(history[-1]["at"]))
    if _as_utc(entry.at) < last_at:
        return HistoryEntry(entry.status, last_at, entry.actor, entry.actor_id)
    return entry


class BookingLedger:
    """Ledger store over an async session factory.

    Each method runs in its own short transaction; nothing holds locks across
    calls to the payment gateway.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find(self, booking_id: uuid.UUID) -> Booking | None:
        async with self._session_maker() as session:
            result = await session.execute(select(Booking).where(Booking.id == booking_id))
            return result.scalar_one_or_none()

    async def get(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.find(booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        return booking

    async def get_by_hold_ref(self, hold_ref: str) -> Booking | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Booking).where(Booking.payment_hold_ref == hold_ref)
            )
            return result.scalar_one_or_none()

    async def create(
        self,
        customer_id: uuid.UUID,
        pro_id: uuid.UUID,
        price: int,
        currency: str,
        entry: HistoryEntry,
    ) -> Booking:
        """Insert a new booking in its initial state with its first history entry."""
        if price < 0:
            raise ValidationError("Price must be nonnegative")
        if entry.status != BookingStatus.REQUESTED:
            raise ValidationError("Bookings start in the requested state")

        booking = Booking(
            customer_id=customer_id,
            pro_id=pro_id,
            price=price,
            currency=currency,
            status=entry.status.value,
            status_history=[entry.to_dict()],
            status_updated_at=entry.at,
            status_updated_by=entry.actor_id,
            payment_state=PaymentState.NONE.value,
        )
        async with self._session_maker() as session:
            async with session.begin():
                session.add(booking)
                await session.flush()
                await session.refresh(booking)
        logger.info(f"Booking {booking.id} requested by customer {customer_id} for pro {pro_id}")
        return booking

    async def compare_and_swap_status(
        self,
        booking_id: uuid.UUID,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        entry: HistoryEntry,
        extra_fields: dict[str, Any] | None = None,
    ) -> bool:
        """Move ``expected_status → new_status`` and append ``entry``, atomically.

        Returns False (and writes nothing) if the booking is no longer in
        ``expected_status``.
        """
        extra_fields = extra_fields or {}
        unknown = set(extra_fields) - TRANSITION_FIELDS
        if unknown:
            raise ValidationError(f"Fields not writable by a transition: {sorted(unknown)}")
        if entry.status != new_status:
            raise ValidationError("History entry must record the new status")

        async with self._session_maker() as session:
            async with session.begin():
                row = (
                    await session.execute(
                        select(Booking.status, Booking.status_history).where(
                            Booking.id == booking_id
                        )
                    )
                ).one_or_none()
                if row is None:
                    raise NotFoundError("Booking", str(booking_id))
                if row.status != expected_status.value:
                    return False

                previous = list(row.status_history or [])
                stamped = stamp_entry(previous, entry)
                updated = previous + [stamped.to_dict()]
                assert_history_append(str(booking_id), previous, updated)

                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.status == expected_status.value,
                    )
                    .values(
                        status=new_status.value,
                        status_history=updated,
                        status_updated_at=stamped.at,
                        status_updated_by=stamped.actor_id,
                        **extra_fields,
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def set_hold(
        self,
        booking_id: uuid.UUID,
        hold_ref: str,
        payment_state: PaymentState,
        allowed_statuses: Iterable[BookingStatus],
    ) -> bool:
        """Attach a gateway hold exactly once, only while the booking allows it."""
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.payment_hold_ref.is_(None),
                        Booking.status.in_([s.value for s in allowed_statuses]),
                    )
                    .values(payment_hold_ref=hold_ref, payment_state=payment_state.value)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def update_payment_state(
        self,
        booking_id: uuid.UUID,
        new_state: PaymentState,
    ) -> bool:
        """Advance ``payment_state`` if the current state may legally reach ``new_state``."""
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.payment_state.in_([s.value for s in sources_for(new_state)]),
                    )
                    .values(payment_state=new_state.value)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def claim_webhook_event(
        self,
        event_id: str,
        event_type: str,
        hold_ref: str | None,
        now: datetime,
        stale_before: datetime,
    ) -> WebhookClaim:
        """Claim an event for processing.

        A new event id is inserted as ``processing``. A known id is reclaimed
        only if its last attempt failed or its claim is older than
        ``stale_before``; otherwise the answer says why it was not claimed.
        """
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(
                        ProcessedWebhookEvent(
                            event_id=event_id,
                            event_type=event_type,
                            hold_ref=hold_ref,
                            status=WebhookEventStatus.PROCESSING.value,
                            attempts=1,
                            claimed_at=now,
                        )
                    )
            return WebhookClaim.CLAIMED
        except IntegrityError:
            pass

        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(ProcessedWebhookEvent)
                    .where(
                        ProcessedWebhookEvent.event_id == event_id,
                        or_(
                            ProcessedWebhookEvent.status == WebhookEventStatus.FAILED.value,
                            and_(
                                ProcessedWebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                                ProcessedWebhookEvent.claimed_at < stale_before,
                            ),
                        ),
                    )
                    .values(
                        status=WebhookEventStatus.PROCESSING.value,
                        claimed_at=now,
                        attempts=ProcessedWebhookEvent.attempts + 1,
                        processing_error=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.info(f"Webhook event {event_id} reclaimed for another attempt")
                    return WebhookClaim.CLAIMED

                current = (
                    await session.execute(
                        select(ProcessedWebhookEvent.status).where(
                            ProcessedWebhookEvent.event_id == event_id
                        )
                    )
                ).scalar_one_or_none()

        if current == WebhookEventStatus.PROCESSED.value:
            return WebhookClaim.DONE
        return WebhookClaim.IN_PROGRESS

    async def mark_webhook_processed(self, event_id: str, now: datetime) -> None:
        await self._finish_webhook_event(event_id, WebhookEventStatus.PROCESSED, now)

    async def mark_webhook_failed(self, event_id: str, error: str, now: datetime) -> None:
        """Hand the event back so the gateway's redelivery is processed again."""
        await self._finish_webhook_event(event_id, WebhookEventStatus.FAILED, now, error)

    async def _finish_webhook_event(
        self,
        event_id: str,
        status: WebhookEventStatus,
        now: datetime,
        error: str | None = None,
    ) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(ProcessedWebhookEvent)
                    .where(ProcessedWebhookEvent.event_id == event_id)
                    .values(status=status.value, processed_at=now, processing_error=error)
                    .execution_options(synchronize_session=False)
                )

    async def list_stalled_captures(self, completed_before: datetime, limit: int = 100) -> list[Booking]:
        """Completed bookings still holding an uncaptured authorization."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.COMPLETED_PENDING_PAYMENT.value,
                    Booking.payment_state == PaymentState.AUTHORIZED.value,
                    Booking.payment_hold_ref.is_not(None),
                    Booking.completed_at < completed_before,
                )
                .order_by(Booking.completed_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_cancelled_with_hold(self, limit: int = 100) -> list[Booking]:
        """Cancelled bookings whose hold was never released."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.CANCELLED.value,
                    Booking.payment_state.in_(
                        [PaymentState.NONE.value, PaymentState.AUTHORIZED.value]
                    ),
                    Booking.payment_hold_ref.is_not(None),
                )
                .order_by(Booking.cancelled_at)
                .limit(limit)
            )
            return list(result.scalars().all())
