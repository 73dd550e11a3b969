"""Booking lifecycle service.

Validates transitions against the transition table, writes them through the
ledger's conditional update and drives the payment hold at the transitions
that carry money: authorize while the visit is live, capture on completion,
release on cancellation.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from visitpay.core.exceptions import (
    Conflict,
    GatewayUnavailable,
    InvalidTransition,
    PaymentDeclined,
    PaymentPartialFailure,
    Unauthorized,
    ValidationError,
)
from visitpay.core.security import SYSTEM_PRINCIPAL, Principal
from visitpay.domain.booking_state import (
    AUTHORIZABLE_STATUSES,
    BOOKING_TRANSITIONS,
    ActorRole,
    BookingStatus,
    can_transition,
    is_valid_transition,
)
from visitpay.domain.payment_state import PaymentState
from visitpay.gateways.base import HoldStatus, PaymentGateway
from visitpay.models.booking import Booking
from visitpay.services.ledger import BookingLedger, HistoryEntry
from visitpay.services.notification_service import (
    NotificationEvent,
    NotificationService,
    NotificationSink,
    Recipient,
)

logger = logging.getLogger(__name__)

# Lifecycle timestamp written together with each target status.
STATUS_TIMESTAMPS = {
    BookingStatus.ACCEPTED: "accepted_at",
    BookingStatus.ON_THE_WAY: "on_the_way_at",
    BookingStatus.IN_PROGRESS: "started_at",
    BookingStatus.COMPLETED_PENDING_PAYMENT: "completed_at",
    BookingStatus.PAID: "paid_at",
    BookingStatus.DECLINED: "declined_at",
    BookingStatus.CANCELLED: "cancelled_at",
}

# Payment states in which the gateway may still be holding funds.
RELEASABLE_PAYMENT_STATES = frozenset({PaymentState.NONE, PaymentState.AUTHORIZED})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class AuthorizationOutcome:
    booking: Booking
    hold_ref: str
    already_authorized: bool = False
    client_secret: str | None = None

    @property
    def requires_action(self) -> bool:
        return self.booking.current_payment_state == PaymentState.NONE


class BookingService:
    """State machine for service-visit bookings."""

    def __init__(
        self,
        ledger: BookingLedger,
        gateway: PaymentGateway,
        notifier: NotificationSink,
        currency: str = "usd",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.currency = currency
        self._clock = clock

    # ==================== READ / CREATE ====================

    async def create_booking(
        self,
        principal: Principal,
        pro_id: uuid.UUID,
        price: int,
    ) -> Booking:
        """Customer requests a visit from a pro."""
        if principal.role != ActorRole.CUSTOMER:
            raise Unauthorized("Only customers can request a booking")
        if price < 0:
            raise ValidationError("Price must be nonnegative")

        entry = self._entry(BookingStatus.REQUESTED, principal)
        booking = await self.ledger.create(
            customer_id=principal.user_id,
            pro_id=pro_id,
            price=price,
            currency=self.currency,
            entry=entry,
        )
        await self._notify_safely(
            Recipient(booking.pro_id, ActorRole.PRO),
            NotificationEvent(
                NotificationService.BOOKING_REQUEST,
                "New booking request",
                "A customer has requested a visit.",
                booking.id,
            ),
        )
        return booking

    async def get_booking(self, booking_id: uuid.UUID, principal: Principal) -> Booking:
        booking = await self.ledger.get(booking_id)
        if principal.role not in (ActorRole.ADMIN, ActorRole.SYSTEM) and not self._is_party(
            principal, booking
        ):
            raise Unauthorized("You are not a party to this booking")
        return booking

    # ==================== TRANSITIONS ====================

    async def transition(
        self,
        booking_id: uuid.UUID,
        target: BookingStatus,
        principal: Principal,
    ) -> Booking:
        """Move a booking to ``target`` on behalf of ``principal``.

        Retrying a transition that already happened returns the booking
        unchanged; retrying completion while payment is unsettled re-attempts
        the capture.

        Raises:
            Unauthorized: caller is not a party, or lacks the role for the edge
            InvalidTransition: the edge is not in the transition table
            Conflict: another writer moved the booking after it was read
            PaymentPartialFailure: completion recorded, payment not settled
        """
        booking = await self.ledger.get(booking_id)
        current = booking.booking_status

        if principal.role != ActorRole.SYSTEM and not self._is_party(principal, booking):
            raise Unauthorized("You are not a party to this booking")

        if self._already_reached(booking, target) and self._may_drive(target, principal.role):
            if (
                target == BookingStatus.COMPLETED_PENDING_PAYMENT
                and current == BookingStatus.COMPLETED_PENDING_PAYMENT
            ):
                return await self._capture(booking)
            logger.info(f"Booking {booking_id} already {current.value}; {principal.label} retry is a no-op")
            return booking

        if not is_valid_transition(current, target):
            raise InvalidTransition(current.value, target.value)
        if not can_transition(current, target, principal.role):
            raise Unauthorized(
                f"A {principal.role.value} cannot move a booking from {current.value} to {target.value}"
            )

        if target == BookingStatus.PAID:
            return await self.confirm_capture(booking_id)

        now = self._clock()
        won = await self.ledger.compare_and_swap_status(
            booking_id,
            current,
            target,
            self._entry(target, principal, now),
            {STATUS_TIMESTAMPS[target]: now},
        )
        if not won:
            latest = await self.ledger.get(booking_id)
            logger.info(
                f"Booking {booking_id}: lost {current.value} -> {target.value} race, "
                f"now {latest.status}"
            )
            raise Conflict(current.value, latest.status)

        logger.info(f"Booking {booking_id}: {current.value} -> {target.value} by {principal.label}")
        booking = await self.ledger.get(booking_id)
        await self._after_transition(booking, target, principal)

        if target == BookingStatus.COMPLETED_PENDING_PAYMENT:
            return await self._capture(booking)
        if target == BookingStatus.CANCELLED:
            # Pick up the released payment state.
            return await self.ledger.get(booking_id)
        return booking

    async def _after_transition(
        self, booking: Booking, target: BookingStatus, principal: Principal
    ) -> None:
        customer = Recipient(booking.customer_id, ActorRole.CUSTOMER)
        pro = Recipient(booking.pro_id, ActorRole.PRO)

        if target == BookingStatus.ACCEPTED:
            await self._notify_safely(
                customer,
                NotificationEvent(
                    NotificationService.BOOKING_ACCEPTED,
                    "Booking accepted",
                    "Your pro accepted the booking.",
                    booking.id,
                ),
            )
        elif target == BookingStatus.DECLINED:
            await self._notify_safely(
                customer,
                NotificationEvent(
                    NotificationService.BOOKING_DECLINED,
                    "Booking declined",
                    "Your pro is unable to take this booking.",
                    booking.id,
                ),
            )
        elif target == BookingStatus.CANCELLED:
            if booking.payment_hold_ref and booking.current_payment_state in RELEASABLE_PAYMENT_STATES:
                try:
                    await self.release_hold(booking)
                except GatewayUnavailable as e:
                    # release_cancelled_holds picks it up
                    logger.warning(f"Hold release for cancelled booking {booking.id} deferred: {e.detail}")
            other = pro if principal.role == ActorRole.CUSTOMER else customer
            await self._notify_safely(
                other,
                NotificationEvent(
                    NotificationService.BOOKING_CANCELLED,
                    "Booking cancelled",
                    f"The booking was cancelled by the {principal.role.value}.",
                    booking.id,
                ),
            )
        else:
            await self._notify_safely(
                customer,
                NotificationEvent(
                    NotificationService.BOOKING_STATUS,
                    "Booking update",
                    f"Your booking is now {target.value.replace('_', ' ')}.",
                    booking.id,
                ),
            )

    # ==================== PAYMENT ====================

    async def authorize(
        self,
        booking_id: uuid.UUID,
        principal: Principal,
        payment_method_ref: str,
    ) -> AuthorizationOutcome:
        """Place the payment hold for a live booking, at most once.

        The booking id is the gateway idempotency key, so concurrent or
        retried calls converge on the same hold.
        """
        booking = await self.ledger.get(booking_id)
        if not self._is_customer(principal, booking):
            raise Unauthorized("Only the booking's customer can authorize payment")

        if booking.payment_hold_ref:
            return AuthorizationOutcome(booking, booking.payment_hold_ref, already_authorized=True)

        if booking.booking_status not in AUTHORIZABLE_STATUSES:
            raise InvalidTransition(
                booking.status,
                "authorized",
                detail=f"Payment cannot be authorized while the booking is {booking.status}.",
            )
        if booking.price <= 0:
            raise ValidationError("Booking total is not set")

        result = await self.gateway.authorize(
            amount=booking.price,
            currency=booking.currency,
            payment_method_ref=payment_method_ref,
            idempotency_key=str(booking.id),
            metadata={"customer_id": str(booking.customer_id), "pro_id": str(booking.pro_id)},
        )
        if not result.success or not result.hold_id:
            logger.warning(f"Authorization declined for booking {booking_id}: {result.error_message}")
            raise PaymentDeclined(result.error_message or "Payment authorization was declined")

        payment_state = (
            PaymentState.AUTHORIZED
            if result.status == HoldStatus.REQUIRES_CAPTURE
            else PaymentState.NONE
        )
        attached = await self.ledger.set_hold(
            booking_id, result.hold_id, payment_state, AUTHORIZABLE_STATUSES
        )
        latest = await self.ledger.get(booking_id)

        if not attached:
            if latest.payment_hold_ref == result.hold_id:
                return AuthorizationOutcome(latest, result.hold_id, already_authorized=True)
            logger.warning(
                f"Booking {booking_id} moved to {latest.status} during authorization; "
                f"releasing hold {result.hold_id}"
            )
            try:
                await self.gateway.release(result.hold_id)
            except GatewayUnavailable as e:
                logger.error(f"Orphan hold {result.hold_id} for booking {booking_id} not released: {e.detail}")
            raise Conflict(booking.status, latest.status)

        logger.info(f"Booking {booking_id}: hold {result.hold_id} placed ({payment_state.value})")
        return AuthorizationOutcome(latest, result.hold_id, client_secret=result.client_secret)

    async def retry_capture(self, booking_id: uuid.UUID, principal: Principal) -> Booking:
        """Re-attempt capture for completed work without re-transitioning."""
        booking = await self.ledger.get(booking_id)
        if principal.role != ActorRole.SYSTEM and not self._is_pro(principal, booking):
            raise Unauthorized("Only the booking's pro can retry payment capture")

        if booking.booking_status == BookingStatus.PAID:
            return booking
        if booking.booking_status != BookingStatus.COMPLETED_PENDING_PAYMENT:
            raise InvalidTransition(
                booking.status,
                BookingStatus.PAID.value,
                detail="Payment can only be captured once the work is completed.",
            )
        return await self._capture(booking)

    async def _capture(self, booking: Booking) -> Booking:
        """Capture the hold for a completed booking.

        The completion is already durable; every failure here surfaces as
        ``PaymentPartialFailure`` and leaves the booking retryable.
        """
        payment_state = booking.current_payment_state
        if payment_state == PaymentState.CAPTURED:
            return await self.confirm_capture(booking.id)

        if not booking.payment_hold_ref or payment_state in (PaymentState.NONE, PaymentState.RELEASED):
            logger.warning(f"Booking {booking.id} completed without an authorized hold")
            raise PaymentPartialFailure(
                "Work completion recorded. The customer has not authorized payment yet.",
                booking,
                code="payment_authorization_missing",
            )

        try:
            result = await self.gateway.capture(booking.payment_hold_ref, idempotency_key=str(booking.id))
        except GatewayUnavailable as e:
            logger.warning(f"Capture for booking {booking.id} did not complete: {e.detail}")
            raise PaymentPartialFailure(
                "Work completion recorded. Payment capture did not complete; retry later.",
                booking,
            )

        if not result.success:
            logger.warning(f"Capture for booking {booking.id} declined: {result.error_message}")
            booking = await self.record_payment_failure(booking.id)
            raise PaymentPartialFailure(
                "Work completion recorded. Payment capture was declined; "
                "the customer needs to update their payment method.",
                booking,
            )

        if result.pending:
            logger.info(f"Capture for booking {booking.id} accepted, awaiting gateway confirmation")
            return booking

        return await self.confirm_capture(booking.id)

    async def confirm_capture(self, booking_id: uuid.UUID) -> Booking:
        """Record a gateway-confirmed capture.

        Both the synchronous completion path and the webhook reconciler land
        here; whichever writes first advances the booking to paid and sends
        the notifications, the other finds it paid and returns.
        """
        booking = await self.ledger.get(booking_id)
        status = booking.booking_status

        if status == BookingStatus.PAID:
            logger.info(f"Booking {booking_id} already paid; capture confirmation is a no-op")
            return booking

        if status != BookingStatus.COMPLETED_PENDING_PAYMENT:
            logger.warning(
                f"Capture confirmed for booking {booking_id} in status {booking.status}; "
                "recording payment state only"
            )
            await self.ledger.update_payment_state(booking_id, PaymentState.CAPTURED)
            return await self.ledger.get(booking_id)

        now = self._clock()
        won = await self.ledger.compare_and_swap_status(
            booking_id,
            BookingStatus.COMPLETED_PENDING_PAYMENT,
            BookingStatus.PAID,
            self._entry(BookingStatus.PAID, SYSTEM_PRINCIPAL, now),
            {"paid_at": now, "payment_state": PaymentState.CAPTURED.value},
        )
        latest = await self.ledger.get(booking_id)
        if not won:
            if latest.booking_status == BookingStatus.PAID:
                logger.info(f"Booking {booking_id} paid by a concurrent writer")
                return latest
            raise Conflict(BookingStatus.COMPLETED_PENDING_PAYMENT.value, latest.status)

        logger.info(f"Booking {booking_id}: completed_pending_payment -> paid by system")
        for recipient in self._parties(latest):
            await self._notify_safely(
                recipient,
                NotificationEvent(
                    NotificationService.PAYMENT_CAPTURED,
                    "Payment complete",
                    "Payment for your visit has been captured.",
                    latest.id,
                ),
            )
        return latest

    async def record_payment_failure(self, booking_id: uuid.UUID) -> Booking:
        """Mark payment FAILED without touching the work-completion record."""
        changed = await self.ledger.update_payment_state(booking_id, PaymentState.FAILED)
        booking = await self.ledger.get(booking_id)
        if not changed:
            logger.info(
                f"Payment failure for booking {booking_id} ignored; payment state is {booking.payment_state}"
            )
            return booking

        logger.warning(f"Booking {booking_id}: payment failed, customer action required")
        for recipient in self._parties(booking):
            await self._notify_safely(
                recipient,
                NotificationEvent(
                    NotificationService.PAYMENT_FAILED,
                    "Payment failed",
                    "We couldn't collect payment for this visit.",
                    booking.id,
                ),
            )
        return booking

    async def record_hold_authorized(self, booking_id: uuid.UUID) -> Booking:
        """Customer finished card authentication; the hold is now capturable."""
        if await self.ledger.update_payment_state(booking_id, PaymentState.AUTHORIZED):
            logger.info(f"Booking {booking_id}: hold authorized")
        return await self.ledger.get(booking_id)

    async def record_hold_released(self, booking_id: uuid.UUID) -> Booking:
        if await self.ledger.update_payment_state(booking_id, PaymentState.RELEASED):
            logger.info(f"Booking {booking_id}: hold released")
        return await self.ledger.get(booking_id)

    async def release_hold(self, booking: Booking) -> bool:
        """Void the booking's hold at the gateway.

        Raises:
            GatewayUnavailable: outcome unknown; safe to retry
        """
        result = await self.gateway.release(booking.payment_hold_ref)
        if not result.success:
            logger.warning(
                f"Hold {booking.payment_hold_ref} for booking {booking.id} not released: "
                f"{result.error_message}"
            )
            return False
        await self.ledger.update_payment_state(booking.id, PaymentState.RELEASED)
        logger.info(f"Booking {booking.id}: hold {booking.payment_hold_ref} released")
        return True

    # ==================== HELPERS ====================

    def _entry(
        self,
        status: BookingStatus,
        principal: Principal,
        at: datetime | None = None,
    ) -> HistoryEntry:
        if principal.role == ActorRole.SYSTEM:
            actor_id = None
        elif principal.role == ActorRole.PRO and principal.pro_id:
            actor_id = str(principal.pro_id)
        else:
            actor_id = str(principal.user_id)
        return HistoryEntry(status, at or self._clock(), principal.role.value, actor_id)

    @staticmethod
    def _is_customer(principal: Principal, booking: Booking) -> bool:
        return principal.role == ActorRole.CUSTOMER and principal.user_id == booking.customer_id

    @staticmethod
    def _is_pro(principal: Principal, booking: Booking) -> bool:
        return principal.role == ActorRole.PRO and principal.pro_id == booking.pro_id

    def _is_party(self, principal: Principal, booking: Booking) -> bool:
        return self._is_customer(principal, booking) or self._is_pro(principal, booking)

    @staticmethod
    def _parties(booking: Booking) -> list[Recipient]:
        return [
            Recipient(booking.customer_id, ActorRole.CUSTOMER),
            Recipient(booking.pro_id, ActorRole.PRO),
        ]

    @staticmethod
    def _already_reached(booking: Booking, target: BookingStatus) -> bool:
        if booking.booking_status == target:
            return True
        # Completion retried after the fast path already settled payment.
        return (
            target == BookingStatus.COMPLETED_PENDING_PAYMENT
            and booking.booking_status == BookingStatus.PAID
            and booking.completed_at is not None
        )

    @staticmethod
    def _may_drive(target: BookingStatus, role: ActorRole) -> bool:
        return any(role in edges.get(target, frozenset()) for edges in BOOKING_TRANSITIONS.values())

    async def _notify_safely(self, recipient: Recipient, event: NotificationEvent) -> None:
        try:
            await self.notifier.notify(recipient, event)
        except Exception as e:
            logger.warning(
                f"Notification {event.notification_type} to {recipient.role.value}:"
                f"{recipient.user_id} failed: {e}"
            )
