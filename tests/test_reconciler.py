"""Webhook reconciler: signature checks, replay safety and convergence."""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from visitpay.core.exceptions import (
    InvalidWebhookSignature,
    NotFoundError,
    PaymentPartialFailure,
    WebhookEventInProgress,
)
from visitpay.domain.booking_state import BookingStatus
from visitpay.services.notification_service import NotificationService
from visitpay.services.webhook_reconciler import WebhookOutcome


@pytest.fixture
def stalled_booking(services, booking_factory, pro):
    """Completed booking whose synchronous capture hit a network error."""

    async def _create():
        booking = await booking_factory(BookingStatus.IN_PROGRESS, authorize=True)
        services.gateway.capture_failures = 1
        with pytest.raises(PaymentPartialFailure):
            await services.bookings.transition(
                booking.id, BookingStatus.COMPLETED_PENDING_PAYMENT, pro
            )
        return await services.ledger.get(booking.id)

    return _create


def _paid_entries(booking) -> int:
    return [e["status"] for e in booking.status_history].count("paid")


async def test_replayed_capture_event_pays_once(services, stalled_booking, notifications_of_type):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event("hold.captured", booking.payment_hold_ref)

    outcomes = [await services.reconciler.handle(body, signature) for _ in range(3)]

    assert [o.outcome for o in outcomes] == [
        WebhookOutcome.PROCESSED,
        WebhookOutcome.DUPLICATE,
        WebhookOutcome.DUPLICATE,
    ]
    stored = await services.ledger.get(booking.id)
    assert stored.status == "paid"
    assert stored.payment_state == "CAPTURED"
    assert _paid_entries(stored) == 1

    rows = await notifications_of_type(NotificationService.PAYMENT_CAPTURED)
    assert sorted(r.recipient_role for r in rows) == ["customer", "pro"]


async def test_capture_event_after_fast_path_is_noop(
    services, booking_factory, customer, pro, notifications_of_type
):
    booking = await booking_factory(BookingStatus.ACCEPTED, authorize=True)
    paid = await services.bookings.transition(booking.id, BookingStatus.COMPLETED_PENDING_PAYMENT, pro)
    body, signature = services.gateway.build_event("hold.captured", paid.payment_hold_ref)

    result = await services.reconciler.handle(body, signature)

    assert result.outcome == WebhookOutcome.PROCESSED
    stored = await services.ledger.get(booking.id)
    assert _paid_entries(stored) == 1
    assert stored.paid_at == paid.paid_at
    assert len(await notifications_of_type(NotificationService.PAYMENT_CAPTURED)) == 2


async def test_fast_path_and_webhook_race_converge(
    services, stalled_booking, pro, notifications_of_type, monkeypatch
):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event("hold.captured", booking.payment_hold_ref)

    barrier = asyncio.Barrier(2)
    original_cas = services.ledger.compare_and_swap_status

    async def wait_then_swap(*args, **kwargs):
        await barrier.wait()
        return await original_cas(*args, **kwargs)

    monkeypatch.setattr(services.ledger, "compare_and_swap_status", wait_then_swap)

    fast_path, webhook = await asyncio.gather(
        services.bookings.retry_capture(booking.id, pro),
        services.reconciler.handle(body, signature),
    )

    assert fast_path.status == "paid"
    assert webhook.booking.status == "paid"
    stored = await services.ledger.get(booking.id)
    assert stored.payment_state == "CAPTURED"
    assert _paid_entries(stored) == 1
    assert stored.status_history[-1]["status"] == "paid"

    rows = await notifications_of_type(NotificationService.PAYMENT_CAPTURED)
    assert sorted(r.recipient_role for r in rows) == ["customer", "pro"]


async def test_failed_event_keeps_work_completion(services, stalled_booking, notifications_of_type):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event("hold.failed", booking.payment_hold_ref)

    await services.reconciler.handle(body, signature)

    stored = await services.ledger.get(booking.id)
    assert stored.status == "completed_pending_payment"
    assert stored.payment_state == "FAILED"
    assert stored.completed_at is not None
    assert len(await notifications_of_type(NotificationService.PAYMENT_FAILED)) == 2


async def test_late_failed_event_never_downgrades_capture(
    services, booking_factory, pro, notifications_of_type
):
    booking = await booking_factory(BookingStatus.ACCEPTED, authorize=True)
    paid = await services.bookings.transition(booking.id, BookingStatus.COMPLETED_PENDING_PAYMENT, pro)
    body, signature = services.gateway.build_event("hold.failed", paid.payment_hold_ref)

    await services.reconciler.handle(body, signature)

    stored = await services.ledger.get(booking.id)
    assert stored.status == "paid"
    assert stored.payment_state == "CAPTURED"
    assert await notifications_of_type(NotificationService.PAYMENT_FAILED) == []


async def test_authorized_event_promotes_pending_hold(services, booking_factory, customer):
    booking = await booking_factory(BookingStatus.ACCEPTED)
    outcome = await services.bookings.authorize(
        booking.id, customer, "pm_card_authentication_required"
    )
    assert outcome.booking.payment_state == "NONE"

    await services.gateway.confirm_action(outcome.hold_ref)
    body, signature = services.gateway.build_event("hold.authorized", outcome.hold_ref)
    await services.reconciler.handle(body, signature)

    assert (await services.ledger.get(booking.id)).payment_state == "AUTHORIZED"


async def test_canceled_event_records_release(services, booking_factory):
    booking = await booking_factory(BookingStatus.ACCEPTED, authorize=True)
    body, signature = services.gateway.build_event("hold.canceled", booking.payment_hold_ref)

    await services.reconciler.handle(body, signature)

    stored = await services.ledger.get(booking.id)
    assert stored.payment_state == "RELEASED"
    assert stored.status == "accepted"


async def test_invalid_signature_is_rejected_without_claiming(services, stalled_booking):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event(
        "hold.captured", booking.payment_hold_ref, event_id="evt_tampered"
    )
    tampered = json.dumps({**json.loads(body), "type": "hold.failed"}).encode()

    with pytest.raises(InvalidWebhookSignature):
        await services.reconciler.handle(tampered, signature)
    with pytest.raises(InvalidWebhookSignature):
        await services.reconciler.handle(body, None)

    assert (await services.ledger.get(booking.id)).status == "completed_pending_payment"
    result = await services.reconciler.handle(body, signature)
    assert result.outcome == WebhookOutcome.PROCESSED


async def test_unknown_hold_is_left_for_redelivery(services):
    body, signature = services.gateway.build_event("hold.captured", "hold_unknown", event_id="evt_1")

    with pytest.raises(NotFoundError):
        await services.reconciler.handle(body, signature)
    with pytest.raises(NotFoundError):
        await services.reconciler.handle(body, signature)


async def test_event_survives_failed_apply_and_failed_hand_back(services, stalled_booking, monkeypatch):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event("hold.captured", booking.payment_hold_ref)

    async def database_down(*args, **kwargs):
        raise ConnectionError("database went away")

    with monkeypatch.context() as patched:
        patched.setattr(services.bookings, "confirm_capture", database_down)
        patched.setattr(services.ledger, "mark_webhook_failed", database_down)
        with pytest.raises(ConnectionError):
            await services.reconciler.handle(body, signature)

    # The first attempt still holds the event until its claim expires.
    with pytest.raises(WebhookEventInProgress):
        await services.reconciler.handle(body, signature)
    assert (await services.ledger.get(booking.id)).status == "completed_pending_payment"

    later = datetime.now(UTC) + services.reconciler.claim_timeout + timedelta(seconds=1)
    monkeypatch.setattr(services.reconciler, "_clock", lambda: later)
    result = await services.reconciler.handle(body, signature)

    assert result.outcome == WebhookOutcome.PROCESSED
    stored = await services.ledger.get(booking.id)
    assert stored.status == "paid"
    assert stored.payment_state == "CAPTURED"

    replay = await services.reconciler.handle(body, signature)
    assert replay.outcome == WebhookOutcome.DUPLICATE


async def test_processing_error_hands_event_back(services, stalled_booking, monkeypatch):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event("hold.captured", booking.payment_hold_ref)

    async def broken(booking_id):
        raise RuntimeError("database went away")

    with monkeypatch.context() as patched:
        patched.setattr(services.bookings, "confirm_capture", broken)
        with pytest.raises(RuntimeError):
            await services.reconciler.handle(body, signature)

    result = await services.reconciler.handle(body, signature)
    assert result.outcome == WebhookOutcome.PROCESSED
    assert (await services.ledger.get(booking.id)).status == "paid"


async def test_unrecognised_event_type_is_ignored(services, stalled_booking):
    booking = await stalled_booking()
    body, signature = services.gateway.build_event("hold.disputed", booking.payment_hold_ref)

    result = await services.reconciler.handle(body, signature)

    assert result.outcome == WebhookOutcome.IGNORED
    assert (await services.ledger.get(booking.id)).status == "completed_pending_payment"
