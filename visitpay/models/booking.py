"""Booking-related database models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from visitpay.database import Base
from visitpay.domain.booking_state import BookingStatus
from visitpay.domain.payment_state import PaymentState

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Booking(Base):
    """Service visit booking.

    ``status`` is the single source of truth for the lifecycle; the
    ``status_history`` column is an append-only audit trail whose last entry
    always mirrors ``status``.
    """

    __tablename__ = "bookings"
    __table_args__ = (CheckConstraint("price >= 0", name="ck_bookings_price_nonnegative"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Parties (weak references, used for authorization only)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    pro_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Pricing (in cents - smallest currency unit)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd")

    # Status
    status: Mapped[str] = mapped_column(
        String(32), default=BookingStatus.REQUESTED.value, nullable=False, index=True
    )
    status_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status_updated_by: Mapped[str | None] = mapped_column(String(64))

    # Payment
    payment_hold_ref: Mapped[str | None] = mapped_column(String(255), unique=True)
    payment_state: Mapped[str] = mapped_column(
        String(16), default=PaymentState.NONE.value, nullable=False, index=True
    )

    # Lifecycle timestamps
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    on_the_way_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def booking_status(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def current_payment_state(self) -> PaymentState:
        return PaymentState(self.payment_state)


class WebhookEventStatus(str, Enum):
    """Processing lifecycle of a received gateway event."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class ProcessedWebhookEvent(Base):
    """Gateway event ids and how far their processing got.

    A row is inserted as ``processing`` when a delivery claims the event and
    only becomes ``processed`` after the event was applied. ``failed`` rows and
    ``processing`` rows whose claim has gone stale are reclaimed by the next
    delivery.
    """

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    hold_ref: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WebhookEventStatus.PROCESSING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processing_error: Mapped[str | None] = mapped_column(Text)
