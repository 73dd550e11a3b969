"""Booking endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from visitpay.api.deps import BookingServiceDep, CurrentPrincipal
from visitpay.schemas.booking import (
    AuthorizationResponse,
    AuthorizeRequest,
    BookingCreate,
    BookingResponse,
    TransitionRequest,
)

router = APIRouter()


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreate,
    principal: CurrentPrincipal,
    bookings: BookingServiceDep,
) -> BookingResponse:
    """Request a visit from a pro (customers only)."""
    booking = await bookings.create_booking(principal, data.pro_id, data.price)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    principal: CurrentPrincipal,
    bookings: BookingServiceDep,
) -> BookingResponse:
    """Get booking details with its status timeline."""
    booking = await bookings.get_booking(booking_id, principal)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/transition", response_model=BookingResponse)
async def transition_booking(
    booking_id: UUID,
    data: TransitionRequest,
    principal: CurrentPrincipal,
    bookings: BookingServiceDep,
) -> BookingResponse:
    """Move a booking along its lifecycle.

    Completing the work also captures the payment hold; if the capture does
    not settle, the response is 207 with the (correct) booking attached.
    """
    booking = await bookings.transition(booking_id, data.target_status, principal)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/authorize", response_model=AuthorizationResponse)
async def authorize_payment(
    booking_id: UUID,
    data: AuthorizeRequest,
    principal: CurrentPrincipal,
    bookings: BookingServiceDep,
) -> AuthorizationResponse:
    """Place the payment hold for a booking. Idempotent per booking."""
    outcome = await bookings.authorize(booking_id, principal, data.payment_method_ref)
    return AuthorizationResponse(
        booking_id=outcome.booking.id,
        hold_ref=outcome.hold_ref,
        payment_state=outcome.booking.payment_state,
        already_authorized=outcome.already_authorized,
        requires_action=outcome.requires_action,
        client_secret=outcome.client_secret,
    )


@router.post("/{booking_id}/capture", response_model=BookingResponse)
async def retry_capture(
    booking_id: UUID,
    principal: CurrentPrincipal,
    bookings: BookingServiceDep,
) -> BookingResponse:
    """Retry payment capture for completed work (booking's pro only)."""
    booking = await bookings.retry_capture(booking_id, principal)
    return BookingResponse.model_validate(booking)
