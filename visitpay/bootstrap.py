"""Process-wide service wiring.

Engine, gateway client and services are built once at startup and closed at
shutdown; the API and the worker both go through :func:`build_services`.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from visitpay.config import Settings
from visitpay.database import close_db, create_engine, create_session_maker
from visitpay.gateways.base import PaymentGateway
from visitpay.services.booking_service import BookingService
from visitpay.services.gateway_service import build_gateway
from visitpay.services.ledger import BookingLedger
from visitpay.services.notification_service import NotificationService, NotificationSink
from visitpay.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    ledger: BookingLedger
    notifier: NotificationSink
    bookings: BookingService
    reconciler: WebhookReconciler

    async def close(self) -> None:
        await self.gateway.close()
        await close_db(self.engine)
        logger.info("Services closed")


def build_services(
    settings: Settings,
    gateway: PaymentGateway | None = None,
    notifier: NotificationSink | None = None,
) -> Services:
    """Build the service graph; ``gateway``/``notifier`` override the configured ones."""
    engine = create_engine(settings)
    session_maker = create_session_maker(engine)
    gateway = gateway or build_gateway(settings)
    ledger = BookingLedger(session_maker)
    notifier = notifier or NotificationService(session_maker)
    bookings = BookingService(ledger, gateway, notifier, currency=settings.payment_currency)
    reconciler = WebhookReconciler(
        gateway,
        ledger,
        bookings,
        claim_timeout=timedelta(seconds=settings.webhook_claim_timeout_seconds),
    )
    return Services(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        gateway=gateway,
        ledger=ledger,
        notifier=notifier,
        bookings=bookings,
        reconciler=reconciler,
    )
