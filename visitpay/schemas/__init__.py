"""Pydantic schemas for API validation."""

from visitpay.schemas.booking import (
    AuthorizationResponse,
    AuthorizeRequest,
    BookingCreate,
    BookingResponse,
    StatusHistoryEntry,
    TransitionRequest,
    WebhookAck,
)
from visitpay.schemas.notification import NotificationListResponse, NotificationResponse

__all__ = [
    # Booking
    "BookingCreate",
    "BookingResponse",
    "StatusHistoryEntry",
    "TransitionRequest",
    # Payment
    "AuthorizeRequest",
    "AuthorizationResponse",
    "WebhookAck",
    # Notification
    "NotificationResponse",
    "NotificationListResponse",
]
