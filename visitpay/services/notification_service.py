"""Notification sink.

Booking services hand finished events to a sink after the state change has
committed. Delivery is best-effort: callers log and swallow sink failures so
a notification problem never affects booking state.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitpay.core.exceptions import NotFoundError
from visitpay.domain.booking_state import ActorRole
from visitpay.models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    user_id: uuid.UUID
    role: ActorRole


@dataclass(frozen=True)
class NotificationEvent:
    notification_type: str
    title: str
    body: str
    booking_id: uuid.UUID | None = None


class NotificationSink(Protocol):
    async def notify(self, recipient: Recipient, event: NotificationEvent) -> None: ...


def booking_deep_link(booking_id: uuid.UUID, role: ActorRole) -> str:
    """Pros and customers open the same booking from different app sections."""
    if role == ActorRole.PRO:
        return f"/pro/bookings/{booking_id}"
    return f"/bookings/{booking_id}"


class NotificationService:
    """In-app notification sink backed by the notifications table."""

    # Notification types
    BOOKING_REQUEST = "booking_request"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_DECLINED = "booking_declined"
    BOOKING_STATUS = "booking_status"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_FAILED = "payment_failed"

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def notify(self, recipient: Recipient, event: NotificationEvent) -> None:
        """Store an in-app notification for ``recipient``."""
        notification = Notification(
            recipient_id=recipient.user_id,
            recipient_role=recipient.role.value,
            notification_type=event.notification_type,
            title=event.title,
            body=event.body,
            booking_id=event.booking_id,
            deep_link=(
                booking_deep_link(event.booking_id, recipient.role) if event.booking_id else None
            ),
        )
        async with self._session_maker() as session:
            async with session.begin():
                session.add(notification)

        logger.debug(
            f"Notification {event.notification_type} queued for "
            f"{recipient.role.value}:{recipient.user_id}"
        )

    async def list_for(
        self,
        recipient: Recipient,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        query = select(Notification).where(
            Notification.recipient_id == recipient.user_id,
            Notification.recipient_role == recipient.role.value,
        )
        if unread_only:
            query = query.where(Notification.read == False)  # noqa: E712

        async with self._session_maker() as session:
            result = await session.execute(
                query.order_by(Notification.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def mark_read(self, recipient: Recipient, notification_id: uuid.UUID) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(Notification)
                    .where(
                        Notification.id == notification_id,
                        Notification.recipient_id == recipient.user_id,
                        Notification.recipient_role == recipient.role.value,
                    )
                    .values(read=True)
                )
                if result.rowcount == 0:
                    raise NotFoundError("Notification", str(notification_id))
