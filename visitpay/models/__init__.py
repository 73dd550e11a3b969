"""Database models."""

from visitpay.models.booking import Booking, ProcessedWebhookEvent, WebhookEventStatus
from visitpay.models.notification import Notification

__all__ = [
    # Booking
    "Booking",
    "ProcessedWebhookEvent",
    "WebhookEventStatus",
    # Notification
    "Notification",
]
