"""Ledger store: conditional writes and the append-only history."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from visitpay.core.exceptions import PaymentPartialFailure, ValidationError
from visitpay.core.immutability import ImmutabilityViolationError
from visitpay.domain.booking_state import AUTHORIZABLE_STATUSES, BookingStatus
from visitpay.domain.payment_state import PaymentState
from visitpay.models.booking import Booking, ProcessedWebhookEvent, WebhookEventStatus
from visitpay.services.ledger import HistoryEntry, WebhookClaim


def _entry(status: BookingStatus, at: datetime | None = None) -> HistoryEntry:
    return HistoryEntry(status, at or datetime.now(UTC), "pro", "pro-1")


async def _requested(ledger) -> Booking:
    return await ledger.create(
        customer_id=uuid.uuid4(),
        pro_id=uuid.uuid4(),
        price=12000,
        currency="usd",
        entry=HistoryEntry(BookingStatus.REQUESTED, datetime.now(UTC), "customer", "c-1"),
    )


async def test_create_records_first_history_entry(services):
    booking = await _requested(services.ledger)

    stored = await services.ledger.get(booking.id)
    assert stored.status == "requested"
    assert stored.payment_state == "NONE"
    assert [e["status"] for e in stored.status_history] == ["requested"]
    assert stored.created_at is not None


async def test_create_rejects_negative_price(services):
    with pytest.raises(ValidationError):
        await services.ledger.create(
            customer_id=uuid.uuid4(),
            pro_id=uuid.uuid4(),
            price=-1,
            currency="usd",
            entry=_entry(BookingStatus.REQUESTED),
        )


async def test_compare_and_swap_appends_exactly_one_entry(services):
    booking = await _requested(services.ledger)

    won = await services.ledger.compare_and_swap_status(
        booking.id,
        BookingStatus.REQUESTED,
        BookingStatus.ACCEPTED,
        _entry(BookingStatus.ACCEPTED),
        {"accepted_at": datetime.now(UTC)},
    )

    stored = await services.ledger.get(booking.id)
    assert won is True
    assert stored.status == "accepted"
    assert stored.accepted_at is not None
    assert [e["status"] for e in stored.status_history] == ["requested", "accepted"]
    assert stored.status_history[-1]["actor"] == "pro"
    assert stored.status_updated_by == "pro-1"


async def test_compare_and_swap_with_stale_status_writes_nothing(services):
    booking = await _requested(services.ledger)
    await services.ledger.compare_and_swap_status(
        booking.id, BookingStatus.REQUESTED, BookingStatus.ACCEPTED, _entry(BookingStatus.ACCEPTED)
    )

    won = await services.ledger.compare_and_swap_status(
        booking.id, BookingStatus.REQUESTED, BookingStatus.DECLINED, _entry(BookingStatus.DECLINED)
    )

    stored = await services.ledger.get(booking.id)
    assert won is False
    assert stored.status == "accepted"
    assert len(stored.status_history) == 2


async def test_history_timestamps_never_go_backwards(services):
    booking = await _requested(services.ledger)
    earlier = datetime.now(UTC) - timedelta(hours=1)

    await services.ledger.compare_and_swap_status(
        booking.id,
        BookingStatus.REQUESTED,
        BookingStatus.ACCEPTED,
        _entry(BookingStatus.ACCEPTED, at=earlier),
    )

    history = (await services.ledger.get(booking.id)).status_history
    first, second = (datetime.fromisoformat(e["at"]) for e in history)
    assert second >= first


async def test_compare_and_swap_rejects_unknown_fields(services):
    booking = await _requested(services.ledger)

    with pytest.raises(ValidationError):
        await services.ledger.compare_and_swap_status(
            booking.id,
            BookingStatus.REQUESTED,
            BookingStatus.ACCEPTED,
            _entry(BookingStatus.ACCEPTED),
            {"price": 1},
        )


async def test_compare_and_swap_rejects_mismatched_entry(services):
    booking = await _requested(services.ledger)

    with pytest.raises(ValidationError):
        await services.ledger.compare_and_swap_status(
            booking.id,
            BookingStatus.REQUESTED,
            BookingStatus.ACCEPTED,
            _entry(BookingStatus.DECLINED),
        )


async def test_set_hold_only_once(services):
    booking = await _requested(services.ledger)
    await services.ledger.compare_and_swap_status(
        booking.id, BookingStatus.REQUESTED, BookingStatus.ACCEPTED, _entry(BookingStatus.ACCEPTED)
    )

    first = await services.ledger.set_hold(
        booking.id, "hold_1", PaymentState.AUTHORIZED, AUTHORIZABLE_STATUSES
    )
    second = await services.ledger.set_hold(
        booking.id, "hold_2", PaymentState.AUTHORIZED, AUTHORIZABLE_STATUSES
    )

    stored = await services.ledger.get(booking.id)
    assert (first, second) == (True, False)
    assert stored.payment_hold_ref == "hold_1"
    assert (await services.ledger.get_by_hold_ref("hold_1")).id == booking.id


async def test_set_hold_refused_outside_live_statuses(services):
    booking = await _requested(services.ledger)

    attached = await services.ledger.set_hold(
        booking.id, "hold_1", PaymentState.AUTHORIZED, AUTHORIZABLE_STATUSES
    )

    assert attached is False
    assert (await services.ledger.get(booking.id)).payment_hold_ref is None


async def test_payment_state_never_downgrades_capture(services):
    booking = await _requested(services.ledger)

    assert await services.ledger.update_payment_state(booking.id, PaymentState.AUTHORIZED)
    assert await services.ledger.update_payment_state(booking.id, PaymentState.CAPTURED)
    assert not await services.ledger.update_payment_state(booking.id, PaymentState.FAILED)
    assert not await services.ledger.update_payment_state(booking.id, PaymentState.RELEASED)

    assert (await services.ledger.get(booking.id)).payment_state == "CAPTURED"


async def test_webhook_claim_lifecycle(services):
    ledger = services.ledger
    now = datetime.now(UTC)
    stale_before = now - timedelta(minutes=5)

    async def claim(at=now, before=stale_before):
        return await ledger.claim_webhook_event("evt_1", "hold.captured", "hold_1", now=at, stale_before=before)

    assert await claim() == WebhookClaim.CLAIMED
    assert await claim() == WebhookClaim.IN_PROGRESS

    await ledger.mark_webhook_failed("evt_1", "boom", now)
    assert await claim() == WebhookClaim.CLAIMED

    await ledger.mark_webhook_processed("evt_1", now)
    assert await claim() == WebhookClaim.DONE
    assert await claim(before=now + timedelta(hours=1)) == WebhookClaim.DONE


async def test_abandoned_webhook_claim_expires(services):
    ledger = services.ledger
    claimed_at = datetime.now(UTC)
    later = claimed_at + timedelta(minutes=10)

    assert (
        await ledger.claim_webhook_event(
            "evt_1", "hold.captured", "hold_1", now=claimed_at, stale_before=claimed_at - timedelta(minutes=5)
        )
        == WebhookClaim.CLAIMED
    )
    assert (
        await ledger.claim_webhook_event(
            "evt_1", "hold.captured", "hold_1", now=later, stale_before=later - timedelta(minutes=5)
        )
        == WebhookClaim.CLAIMED
    )

    async with services.session_maker() as session:
        record = await session.get(ProcessedWebhookEvent, "evt_1")
    assert record.attempts == 2
    assert record.status == WebhookEventStatus.PROCESSING.value


async def test_orm_delete_is_refused(services):
    booking = await _requested(services.ledger)

    async with services.session_maker() as session:
        loaded = (await session.execute(select(Booking).where(Booking.id == booking.id))).scalar_one()
        await session.delete(loaded)
        with pytest.raises(ImmutabilityViolationError):
            await session.flush()
        await session.rollback()

    assert await services.ledger.find(booking.id) is not None


async def test_orm_history_rewrite_is_refused(services):
    booking = await _requested(services.ledger)

    async with services.session_maker() as session:
        loaded = (await session.execute(select(Booking).where(Booking.id == booking.id))).scalar_one()
        loaded.status_history = []
        with pytest.raises(ImmutabilityViolationError):
            await session.flush()
        await session.rollback()

    assert len((await services.ledger.get(booking.id)).status_history) == 1


async def test_stalled_capture_query(services, booking_factory, pro):
    booking = await booking_factory(BookingStatus.IN_PROGRESS, authorize=True)
    services.gateway.capture_failures = 1
    with pytest.raises(PaymentPartialFailure):
        await services.bookings.transition(booking.id, BookingStatus.COMPLETED_PENDING_PAYMENT, pro)

    later = datetime.now(UTC) + timedelta(minutes=30)
    stalled = await services.ledger.list_stalled_captures(later)
    recent = await services.ledger.list_stalled_captures(datetime.now(UTC) - timedelta(minutes=30))

    assert [b.id for b in stalled] == [booking.id]
    assert recent == []
