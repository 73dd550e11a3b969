"""Celery background tasks.

Each task builds its own service graph for the run; the async
implementations take the services explicitly so they can be driven directly.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from celery import shared_task

from visitpay.bootstrap import Services, build_services
from visitpay.config import get_settings
from visitpay.core.exceptions import Conflict, GatewayUnavailable, PaymentPartialFailure
from visitpay.core.security import SYSTEM_PRINCIPAL
from visitpay.domain.booking_state import BookingStatus
from visitpay.domain.payment_state import PaymentState
from visitpay.gateways.base import GatewayType

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 3600


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def backoff_seconds(retries: int) -> int:
    """Exponential backoff: 60s, 120s, 240s ... capped at an hour."""
    return min(60 * 2**retries, MAX_BACKOFF_SECONDS)


async def _with_services(job: Callable[[Services], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    settings = get_settings()
    if settings.payment_gateway == GatewayType.SANDBOX.value:
        # Sandbox holds live in the API process's memory; a worker process never sees them.
        logger.warning("Payment sweeps skipped: the sandbox gateway is not shared across processes")
        return {"status": "skipped", "reason": "sandbox gateway"}

    services = build_services(settings)
    try:
        return await job(services)
    finally:
        await services.close()


# ==================== PAYMENT TASKS ====================


@shared_task(bind=True, max_retries=5)
def retry_stalled_captures(self):
    """Capture holds for completed bookings whose capture did not go through.

    Runs every 15 minutes. Gateway outages retry the task with backoff.
    """
    try:
        return run_async(_with_services(_retry_stalled_captures))
    except GatewayUnavailable as exc:
        raise self.retry(exc=exc, countdown=backoff_seconds(self.request.retries))


async def _retry_stalled_captures(services: Services, now: datetime | None = None) -> dict[str, Any]:
    """Async implementation of the stalled capture sweep."""
    cutoff = (now or datetime.now(UTC)) - timedelta(
        minutes=services.settings.capture_retry_after_minutes
    )
    bookings = await services.ledger.list_stalled_captures(cutoff)

    captured = declined = deferred = 0
    for booking in bookings:
        try:
            updated = await services.bookings.retry_capture(booking.id, SYSTEM_PRINCIPAL)
        except PaymentPartialFailure as e:
            if e.booking.current_payment_state == PaymentState.FAILED:
                declined += 1
            else:
                deferred += 1
            continue
        except Conflict:
            # Webhook got there first
            continue
        if updated.booking_status == BookingStatus.PAID:
            captured += 1

    logger.info(
        f"Stalled capture sweep: {len(bookings)} found, {captured} captured, "
        f"{declined} declined, {deferred} deferred"
    )
    if deferred:
        raise GatewayUnavailable("capture", f"{deferred} capture(s) deferred")
    return {"status": "success", "found": len(bookings), "captured": captured, "declined": declined}


@shared_task(bind=True, max_retries=5)
def release_cancelled_holds(self):
    """Void holds still attached to cancelled bookings.

    Runs every 15 minutes. Gateway outages retry the task with backoff.
    """
    try:
        return run_async(_with_services(_release_cancelled_holds))
    except GatewayUnavailable as exc:
        raise self.retry(exc=exc, countdown=backoff_seconds(self.request.retries))


async def _release_cancelled_holds(services: Services) -> dict[str, Any]:
    """Async implementation of the cancelled hold sweep."""
    bookings = await services.ledger.list_cancelled_with_hold()

    released = refused = deferred = 0
    for booking in bookings:
        try:
            if await services.bookings.release_hold(booking):
                released += 1
            else:
                refused += 1
        except GatewayUnavailable as e:
            logger.warning(f"Release for booking {booking.id} deferred: {e.detail}")
            deferred += 1

    logger.info(
        f"Cancelled hold sweep: {len(bookings)} found, {released} released, "
        f"{refused} refused, {deferred} deferred"
    )
    if deferred:
        raise GatewayUnavailable("release", f"{deferred} release(s) deferred")
    return {"status": "success", "found": len(bookings), "released": released, "refused": refused}
