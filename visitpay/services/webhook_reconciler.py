"""Payment webhook reconciler.

Turns the gateway's at-least-once event feed into exactly-once effects:
verify the signature, claim the event id, then re-enter the booking service
with the gateway-confirmed fact. The claim only becomes final once the event
has been applied; a failed or abandoned attempt leaves the event claimable so
the gateway's redelivery is processed again.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from visitpay.core.exceptions import InvalidWebhookSignature, NotFoundError, WebhookEventInProgress
from visitpay.gateways.base import PaymentGateway, WebhookEvent, WebhookEventType
from visitpay.models.booking import Booking
from visitpay.services.booking_service import BookingService
from visitpay.services.ledger import BookingLedger, WebhookClaim

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    booking: Booking | None = None


class WebhookReconciler:
    """Applies verified gateway events to bookings.

    ``claim_timeout`` is how long a delivery may hold an event before another
    delivery is allowed to take it over.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        ledger: BookingLedger,
        bookings: BookingService,
        claim_timeout: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.bookings = bookings
        self.claim_timeout = claim_timeout
        self._clock = clock

    async def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Verify, de-duplicate and apply one webhook delivery.

        Raises:
            InvalidWebhookSignature: payload is not trusted; nothing recorded
            WebhookEventInProgress: another delivery holds the event
            NotFoundError: the hold is not attached to any booking yet
        """
        try:
            event = self.gateway.verify_webhook(payload, signature)
        except InvalidWebhookSignature as e:
            logger.warning(f"Rejected payment webhook: {e.detail}")
            raise

        now = self._clock()
        claim = await self.ledger.claim_webhook_event(
            event.event_id,
            event.type,
            event.hold_id,
            now=now,
            stale_before=now - self.claim_timeout,
        )
        if claim == WebhookClaim.DONE:
            logger.info(f"Webhook event {event.event_id} ({event.type}) already processed")
            return WebhookResult(event.event_id, event.type, WebhookOutcome.DUPLICATE)
        if claim == WebhookClaim.IN_PROGRESS:
            logger.info(f"Webhook event {event.event_id} ({event.type}) is being processed elsewhere")
            raise WebhookEventInProgress(event.event_id)

        try:
            booking = await self._apply(event)
        except NotFoundError as e:
            # The hold may not be attached yet; let the gateway redeliver.
            logger.warning(f"Webhook event {event.event_id}: no booking for hold {event.hold_id}")
            await self._hand_back(event, str(e.detail))
            raise
        except Exception as e:
            logger.exception(f"Webhook event {event.event_id} ({event.type}) failed; left for redelivery")
            await self._hand_back(event, repr(e))
            raise

        await self.ledger.mark_webhook_processed(event.event_id, self._clock())

        if booking is None:
            logger.info(f"Webhook event {event.event_id} of type {event.type} ignored")
            return WebhookResult(event.event_id, event.type, WebhookOutcome.IGNORED)

        logger.info(
            f"Webhook event {event.event_id} ({event.type}) applied to booking {booking.id}: "
            f"status={booking.status} payment_state={booking.payment_state}"
        )
        return WebhookResult(event.event_id, event.type, WebhookOutcome.PROCESSED, booking)

    async def _hand_back(self, event: WebhookEvent, error: str) -> None:
        """Mark the attempt failed; if even that fails the claim expires on its own."""
        try:
            await self.ledger.mark_webhook_failed(event.event_id, error, self._clock())
        except Exception:
            logger.exception(
                f"Webhook event {event.event_id}: could not record failure; "
                f"claim expires after {self.claim_timeout}"
            )

    async def _apply(self, event: WebhookEvent) -> Booking | None:
        try:
            event_type = WebhookEventType(event.type)
        except ValueError:
            return None
        if not event.hold_id:
            return None

        booking = await self.ledger.get_by_hold_ref(event.hold_id)
        if booking is None:
            raise NotFoundError("Booking for hold", event.hold_id)

        if event_type == WebhookEventType.HOLD_CAPTURED:
            return await self.bookings.confirm_capture(booking.id)
        if event_type == WebhookEventType.HOLD_FAILED:
            return await self.bookings.record_payment_failure(booking.id)
        if event_type == WebhookEventType.HOLD_AUTHORIZED:
            return await self.bookings.record_hold_authorized(booking.id)
        return await self.bookings.record_hold_released(booking.id)
