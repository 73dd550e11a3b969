"""Booking-related Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visitpay.domain.booking_state import BookingStatus, parse_status


class BookingCreate(BaseModel):
    """Schema for requesting a visit."""

    pro_id: UUID
    price: int = Field(..., ge=0, description="Total in the smallest currency unit")


class StatusHistoryEntry(BaseModel):
    status: BookingStatus
    at: datetime
    actor: str
    actor_id: str | None = None


class BookingResponse(BaseModel):
    """Schema for booking response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    pro_id: UUID

    # Pricing
    price: int
    currency: str

    # Status
    status: BookingStatus
    status_history: list[StatusHistoryEntry]
    status_updated_at: datetime | None = None

    # Payment
    payment_hold_ref: str | None = None
    payment_state: str

    # Timestamps
    accepted_at: datetime | None = None
    on_the_way_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    paid_at: datetime | None = None
    declined_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None


class TransitionRequest(BaseModel):
    """Target status for a booking; accepts legacy status spellings."""

    model_config = ConfigDict(populate_by_name=True)

    target_status: BookingStatus = Field(..., alias="targetStatus")

    @field_validator("target_status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if isinstance(v, str):
            try:
                return parse_status(v.strip().lower())
            except ValueError:
                raise ValueError(f"Unknown booking status: {v}")
        return v


class AuthorizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method_ref: str = Field(..., alias="paymentMethodRef", min_length=1, max_length=255)


class AuthorizationResponse(BaseModel):
    """Hold reference for a booking; ``already_authorized`` on a repeated call."""

    booking_id: UUID
    hold_ref: str
    payment_state: str
    already_authorized: bool = False
    requires_action: bool = False
    client_secret: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    outcome: str
