"""Base payment gateway interface.

All gateway adapters must implement this interface.
Business logic should NOT live in adapters - only gateway communication.

Adapters return a result with ``success=False`` when the gateway gives a
definitive answer (declined, hold already gone) and raise
``GatewayUnavailable`` when the outcome is unknown (network, timeout, 5xx).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    SANDBOX = "sandbox"


class HoldStatus(str, Enum):
    """Gateway-side status of a hold."""

    REQUIRES_ACTION = "requires_action"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    PROCESSING = "processing"


class WebhookEventType(str, Enum):
    """Normalised gateway event types."""

    HOLD_AUTHORIZED = "hold.authorized"
    HOLD_CAPTURED = "hold.captured"
    HOLD_FAILED = "hold.failed"
    HOLD_CANCELED = "hold.canceled"


@dataclass
class HoldResult:
    """Result of placing an authorization hold."""

    success: bool
    hold_id: str | None = None
    status: HoldStatus | None = None
    client_secret: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class CaptureResult:
    """Result of capturing a hold."""

    success: bool
    hold_id: str | None = None
    status: HoldStatus | None = None
    error_message: str | None = None
    raw_response: dict | None = None

    @property
    def pending(self) -> bool:
        """Gateway accepted the capture but has not settled it yet."""
        return self.success and self.status == HoldStatus.PROCESSING


@dataclass
class ReleaseResult:
    """Result of voiding a hold."""

    success: bool
    hold_id: str | None = None
    error_message: str | None = None


@dataclass
class WebhookEvent:
    """Verified gateway event envelope ``{eventId, type, data: {holdId}}``."""

    event_id: str
    type: str
    hold_id: str | None
    data: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""
        pass

    @abstractmethod
    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> HoldResult:
        """Place a hold for ``amount`` against a payment method.

        Args:
            amount: Amount in smallest currency unit (cents)
            currency: Currency code
            payment_method_ref: Gateway payment method reference
            idempotency_key: Retries with the same key return the same hold
            metadata: Additional metadata

        Returns:
            HoldResult with the hold reference
        """
        pass

    @abstractmethod
    async def capture(
        self,
        hold_id: str,
        idempotency_key: str,
    ) -> CaptureResult:
        """Capture a previously authorized hold.

        Args:
            hold_id: Gateway hold reference
            idempotency_key: Retries with the same key capture at most once

        Returns:
            CaptureResult with the settled status
        """
        pass

    @abstractmethod
    async def release(
        self,
        hold_id: str,
    ) -> ReleaseResult:
        """Void an uncaptured hold."""
        pass

    @abstractmethod
    def verify_webhook(
        self,
        payload: bytes,
        signature: str | None,
    ) -> WebhookEvent:
        """Verify webhook signature and parse payload.

        Args:
            payload: Raw request body
            signature: Webhook signature header

        Returns:
            Parsed event envelope

        Raises:
            InvalidWebhookSignature: If the signature does not verify
        """
        pass

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        return None
