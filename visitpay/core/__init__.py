"""Core utilities and security modules."""

from visitpay.core.exceptions import (
    AppException,
    AuthenticationError,
    Conflict,
    GatewayUnavailable,
    InvalidTransition,
    InvalidWebhookSignature,
    NotFoundError,
    PaymentDeclined,
    PaymentPartialFailure,
    Unauthorized,
    ValidationError,
    WebhookEventInProgress,
)

__all__ = [
    "AppException",
    "AuthenticationError",
    "Conflict",
    "GatewayUnavailable",
    "InvalidTransition",
    "InvalidWebhookSignature",
    "NotFoundError",
    "PaymentDeclined",
    "PaymentPartialFailure",
    "Unauthorized",
    "ValidationError",
    "WebhookEventInProgress",
]
