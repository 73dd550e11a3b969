"""Stripe payment gateway adapter.

Holds are PaymentIntents created with ``capture_method=manual``.
"""

import logging

import stripe

from visitpay.core.exceptions import GatewayUnavailable, InvalidWebhookSignature
from visitpay.gateways.base import (
    CaptureResult,
    GatewayType,
    HoldResult,
    HoldStatus,
    PaymentGateway,
    ReleaseResult,
    WebhookEvent,
    WebhookEventType,
)

logger = logging.getLogger(__name__)

STRIPE_EVENT_TYPES = {
    "payment_intent.amount_capturable_updated": WebhookEventType.HOLD_AUTHORIZED,
    "payment_intent.succeeded": WebhookEventType.HOLD_CAPTURED,
    "payment_intent.payment_failed": WebhookEventType.HOLD_FAILED,
    "payment_intent.canceled": WebhookEventType.HOLD_CANCELED,
}

# Errors where the outcome at Stripe is unknown and the call may be retried.
TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _hold_status(value: str) -> HoldStatus | None:
    if value in ("requires_action", "requires_confirmation"):
        return HoldStatus.REQUIRES_ACTION
    try:
        return HoldStatus(value)
    except ValueError:
        return None


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    def __init__(self, secret_key: str, webhook_secret: str, timeout: float = 20.0):
        self.webhook_secret = webhook_secret
        self._http_client = stripe.HTTPXClient(timeout=timeout)
        self._client = stripe.StripeClient(secret_key, http_client=self._http_client)

    async def close(self) -> None:
        await self._http_client.close_async()

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> HoldResult:
        """Create and confirm a manual-capture PaymentIntent."""
        try:
            intent = await self._client.payment_intents.create_async(
                params={
                    "amount": amount,
                    "currency": currency.lower(),
                    "payment_method": payment_method_ref,
                    "capture_method": "manual",
                    "confirm": True,
                    "automatic_payment_methods": {
                        "enabled": True,
                        "allow_redirects": "never",
                    },
                    "metadata": {"booking_id": idempotency_key, **(metadata or {})},
                },
                options={"idempotency_key": f"hold-{idempotency_key}"},
            )
        except TRANSIENT_ERRORS as e:
            raise GatewayUnavailable("authorize", str(e))
        except stripe.CardError as e:
            return HoldResult(success=False, error_message=e.user_message or str(e))
        except stripe.StripeError as e:
            return HoldResult(success=False, error_message=str(e))

        status = _hold_status(intent.status)
        if status not in (HoldStatus.REQUIRES_CAPTURE, HoldStatus.REQUIRES_ACTION):
            return HoldResult(
                success=False,
                hold_id=intent.id,
                status=status,
                error_message=f"Unexpected PaymentIntent status: {intent.status}",
            )

        return HoldResult(
            success=True,
            hold_id=intent.id,
            status=status,
            client_secret=intent.client_secret if status == HoldStatus.REQUIRES_ACTION else None,
            raw_response={"id": intent.id, "status": intent.status},
        )

    async def capture(
        self,
        hold_id: str,
        idempotency_key: str,
    ) -> CaptureResult:
        """Capture a PaymentIntent; an already-captured intent counts as success."""
        try:
            intent = await self._client.payment_intents.capture_async(
                hold_id,
                options={"idempotency_key": f"capture-{idempotency_key}"},
            )
        except TRANSIENT_ERRORS as e:
            raise GatewayUnavailable("capture", str(e))
        except stripe.InvalidRequestError as e:
            return await self._reconcile_failed_capture(hold_id, e)
        except stripe.StripeError as e:
            return CaptureResult(success=False, hold_id=hold_id, error_message=str(e))

        status = _hold_status(intent.status)
        return CaptureResult(
            success=status in (HoldStatus.SUCCEEDED, HoldStatus.PROCESSING),
            hold_id=intent.id,
            status=status,
            error_message=None if status == HoldStatus.SUCCEEDED else f"PaymentIntent status: {intent.status}",
            raw_response={"id": intent.id, "status": intent.status},
        )

    async def _reconcile_failed_capture(
        self, hold_id: str, error: stripe.InvalidRequestError
    ) -> CaptureResult:
        """A rejected capture may mean an earlier attempt already went through."""
        try:
            intent = await self._client.payment_intents.retrieve_async(hold_id)
        except TRANSIENT_ERRORS as e:
            raise GatewayUnavailable("capture", str(e))
        except stripe.StripeError:
            return CaptureResult(success=False, hold_id=hold_id, error_message=str(error))

        if intent.status == "succeeded":
            logger.info(f"PaymentIntent {hold_id} was already captured")
            return CaptureResult(success=True, hold_id=hold_id, status=HoldStatus.SUCCEEDED)

        return CaptureResult(
            success=False,
            hold_id=hold_id,
            status=_hold_status(intent.status),
            error_message=str(error),
        )

    async def release(
        self,
        hold_id: str,
    ) -> ReleaseResult:
        """Cancel an uncaptured PaymentIntent."""
        try:
            await self._client.payment_intents.cancel_async(hold_id)
        except TRANSIENT_ERRORS as e:
            raise GatewayUnavailable("release", str(e))
        except stripe.InvalidRequestError as e:
            if e.code == "payment_intent_unexpected_state":
                try:
                    intent = await self._client.payment_intents.retrieve_async(hold_id)
                except TRANSIENT_ERRORS as retrieve_error:
                    raise GatewayUnavailable("release", str(retrieve_error))
                if intent.status == "canceled":
                    return ReleaseResult(success=True, hold_id=hold_id)
            return ReleaseResult(success=False, hold_id=hold_id, error_message=str(e))
        except stripe.StripeError as e:
            return ReleaseResult(success=False, hold_id=hold_id, error_message=str(e))

        return ReleaseResult(success=True, hold_id=hold_id)

    def verify_webhook(
        self,
        payload: bytes,
        signature: str | None,
    ) -> WebhookEvent:
        """Verify Stripe webhook signature."""
        if not signature:
            raise InvalidWebhookSignature("No signature provided")

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
            )
        except ValueError:
            raise InvalidWebhookSignature("Invalid payload")
        except stripe.SignatureVerificationError:
            raise InvalidWebhookSignature()

        data = event["data"]["object"]
        mapped = STRIPE_EVENT_TYPES.get(event["type"])
        return WebhookEvent(
            event_id=event["id"],
            type=mapped.value if mapped else event["type"],
            hold_id=data.get("id") if data.get("object") == "payment_intent" else None,
            data={"status": data.get("status"), "metadata": dict(data.get("metadata") or {})},
        )
