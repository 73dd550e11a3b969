"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception.

    ``code`` is a stable machine-readable identifier; ``extra`` is merged into
    the JSON error body so callers get enough context to decide what to do next.
    """

    code: str = "internal_error"

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.extra = extra or {}
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Validation error exception."""

    code = "validation_error"

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    code = "not_found"

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    code = "unauthenticated"

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class Unauthorized(AppException):
    """Actor is not a party to the booking or lacks the role for this edge."""

    code = "not_authorized"

    def __init__(self, detail: str = "You don't have permission to perform this action") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidTransition(AppException):
    """Requested edge is not in the transition table."""

    code = "invalid_transition"

    def __init__(self, current: str, target: str, detail: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail or f"Cannot transition to {target} from {current}.",
            extra={"current_status": current},
        )


class Conflict(AppException):
    """Optimistic-concurrency precondition failed: someone else moved first."""

    code = "conflict"

    def __init__(self, expected: str, current: str | None) -> None:
        self.expected = expected
        self.current = current
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking changed concurrently (expected {expected}, now {current}). Re-read and retry.",
            extra={"current_status": current},
        )


class PaymentPartialFailure(AppException):
    """Work completion is recorded but the payment did not settle.

    Not a server error: the booking record is correct and payment needs
    follow-up (retry the capture or ask the customer for a payment method).
    """

    code = "payment_capture_failed"

    def __init__(self, detail: str, booking: Any, code: str | None = None) -> None:
        self.booking = booking
        if code:
            self.code = code
        super().__init__(status_code=status.HTTP_207_MULTI_STATUS, detail=detail)


class PaymentDeclined(AppException):
    """The gateway refused to place the hold."""

    code = "payment_declined"

    def __init__(self, detail: str = "Payment authorization was declined") -> None:
        super().__init__(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


class GatewayUnavailable(AppException):
    """Transient payment gateway failure; safe to retry with backoff."""

    code = "gateway_unavailable"

    def __init__(self, operation: str, detail: str | None = None) -> None:
        self.operation = operation
        message = f"Payment gateway unavailable during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)


class InvalidWebhookSignature(AppException):
    """Webhook payload failed signature verification."""

    code = "invalid_signature"

    def __init__(self, detail: str = "Webhook signature verification failed") -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class WebhookEventInProgress(AppException):
    """Another delivery of the same event is still being processed."""

    code = "webhook_in_progress"

    def __init__(self, event_id: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Webhook event {event_id} is already being processed",
        )
