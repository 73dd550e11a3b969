"""Sandbox payment gateway adapter.

Keeps holds in memory and signs webhook envelopes with HMAC-SHA256, using the
same ``t=<timestamp>,v1=<hex>`` header layout as Stripe. Used for local
development, demos and tests; refused in production.
"""

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass

from visitpay.core.exceptions import GatewayUnavailable, InvalidWebhookSignature
from visitpay.gateways.base import (
    CaptureResult,
    GatewayType,
    HoldResult,
    HoldStatus,
    PaymentGateway,
    ReleaseResult,
    WebhookEvent,
)

DECLINED_PAYMENT_METHOD = "pm_card_declined"
REQUIRES_ACTION_PAYMENT_METHOD = "pm_card_authentication_required"

SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass
class SandboxHold:
    hold_id: str
    amount: int
    currency: str
    payment_method_ref: str
    idempotency_key: str
    status: HoldStatus
    capture_count: int = 0


class SandboxGateway(PaymentGateway):
    """In-memory gateway with idempotency keys and fault injection.

    ``capture_failures`` / ``release_failures`` make the next N calls raise
    ``GatewayUnavailable``; ``capture_declines`` makes the next N captures
    come back refused.
    """

    def __init__(self, webhook_secret: str):
        self.webhook_secret = webhook_secret
        self.holds: dict[str, SandboxHold] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.capture_failures = 0
        self.capture_declines = 0
        self.release_failures = 0
        self.authorize_calls = 0
        self.capture_calls = 0

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.SANDBOX

    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> HoldResult:
        """Place a hold; a repeated idempotency key returns the original hold."""
        async with self._lock:
            self.authorize_calls += 1
            existing_id = self._by_idempotency_key.get(idempotency_key)
            if existing_id:
                hold = self.holds[existing_id]
                return HoldResult(success=True, hold_id=hold.hold_id, status=hold.status)

            if payment_method_ref == DECLINED_PAYMENT_METHOD:
                return HoldResult(success=False, error_message="Your card was declined.")

            status = (
                HoldStatus.REQUIRES_ACTION
                if payment_method_ref == REQUIRES_ACTION_PAYMENT_METHOD
                else HoldStatus.REQUIRES_CAPTURE
            )
            hold = SandboxHold(
                hold_id=f"hold_{uuid.uuid4().hex[:24]}",
                amount=amount,
                currency=currency,
                payment_method_ref=payment_method_ref,
                idempotency_key=idempotency_key,
                status=status,
            )
            self.holds[hold.hold_id] = hold
            self._by_idempotency_key[idempotency_key] = hold.hold_id

        return HoldResult(
            success=True,
            hold_id=hold.hold_id,
            status=status,
            client_secret=f"{hold.hold_id}_secret" if status == HoldStatus.REQUIRES_ACTION else None,
        )

    async def capture(
        self,
        hold_id: str,
        idempotency_key: str,
    ) -> CaptureResult:
        """Capture a hold; capturing an already-captured hold succeeds."""
        async with self._lock:
            self.capture_calls += 1
            if self.capture_failures > 0:
                self.capture_failures -= 1
                raise GatewayUnavailable("capture", "sandbox connection reset")

            hold = self.holds.get(hold_id)
            if hold is None:
                return CaptureResult(success=False, hold_id=hold_id, error_message="No such hold")

            if self.capture_declines > 0:
                self.capture_declines -= 1
                return CaptureResult(
                    success=False,
                    hold_id=hold_id,
                    status=hold.status,
                    error_message="Capture was declined",
                )

            if hold.status == HoldStatus.SUCCEEDED:
                return CaptureResult(success=True, hold_id=hold_id, status=hold.status)
            if hold.status != HoldStatus.REQUIRES_CAPTURE:
                return CaptureResult(
                    success=False,
                    hold_id=hold_id,
                    status=hold.status,
                    error_message=f"Hold cannot be captured from {hold.status.value}",
                )

            hold.status = HoldStatus.SUCCEEDED
            hold.capture_count += 1

        return CaptureResult(success=True, hold_id=hold_id, status=HoldStatus.SUCCEEDED)

    async def release(
        self,
        hold_id: str,
    ) -> ReleaseResult:
        async with self._lock:
            if self.release_failures > 0:
                self.release_failures -= 1
                raise GatewayUnavailable("release", "sandbox connection reset")

            hold = self.holds.get(hold_id)
            if hold is None:
                return ReleaseResult(success=False, hold_id=hold_id, error_message="No such hold")
            if hold.status == HoldStatus.SUCCEEDED:
                return ReleaseResult(
                    success=False, hold_id=hold_id, error_message="Hold already captured"
                )
            hold.status = HoldStatus.CANCELED

        return ReleaseResult(success=True, hold_id=hold_id)

    async def confirm_action(self, hold_id: str) -> None:
        """Simulate the customer finishing card authentication."""
        async with self._lock:
            hold = self.holds[hold_id]
            if hold.status == HoldStatus.REQUIRES_ACTION:
                hold.status = HoldStatus.REQUIRES_CAPTURE

    def sign(self, payload: bytes, timestamp: int | None = None) -> str:
        """Build a signature header for ``payload``."""
        timestamp = timestamp if timestamp is not None else int(time.time())
        signed = f"{timestamp}.".encode() + payload
        digest = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    def build_event(
        self,
        event_type: str,
        hold_id: str,
        event_id: str | None = None,
    ) -> tuple[bytes, str]:
        """Serialize and sign an event envelope; returns (body, signature header)."""
        envelope = {
            "eventId": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "type": event_type,
            "data": {"holdId": hold_id},
        }
        body = json.dumps(envelope).encode()
        return body, self.sign(body)

    def verify_webhook(
        self,
        payload: bytes,
        signature: str | None,
    ) -> WebhookEvent:
        if not signature:
            raise InvalidWebhookSignature("No signature provided")

        try:
            parts = dict(item.split("=", 1) for item in signature.split(","))
            timestamp = int(parts["t"])
            received = parts["v1"]
        except (KeyError, ValueError):
            raise InvalidWebhookSignature("Malformed signature header")

        if abs(time.time() - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
            raise InvalidWebhookSignature("Signature timestamp outside tolerance")

        expected = self.sign(payload, timestamp).split("v1=", 1)[1]
        if not hmac.compare_digest(expected, received):
            raise InvalidWebhookSignature()

        try:
            envelope = json.loads(payload)
            return WebhookEvent(
                event_id=str(envelope["eventId"]),
                type=str(envelope["type"]),
                hold_id=envelope.get("data", {}).get("holdId"),
                data=dict(envelope.get("data", {})),
            )
        except (ValueError, KeyError, TypeError, AttributeError):
            raise InvalidWebhookSignature("Invalid payload")
