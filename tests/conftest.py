"""
Pytest configuration and shared fixtures.
"""

import uuid
from collections.abc import Awaitable, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from visitpay.bootstrap import Services, build_services
from visitpay.config import Settings
from visitpay.core.immutability import register_immutability_enforcement
from visitpay.core.security import Principal, create_access_token
from visitpay.database import init_db
from visitpay.domain.booking_state import ActorRole, BookingStatus
from visitpay.gateways.sandbox import SandboxGateway
from visitpay.main import create_application
from visitpay.models.booking import Booking
from visitpay.models.notification import Notification

WALK = [BookingStatus.ACCEPTED, BookingStatus.ON_THE_WAY, BookingStatus.IN_PROGRESS]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="development",
        payment_gateway="sandbox",
        payment_gateway_secret="sk_test_visitpay",
        payment_webhook_secret="whsec_test_visitpay",
        jwt_secret_key="test-jwt-secret",
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'visitpay.db'}",
    )


@pytest.fixture
def gateway(settings) -> SandboxGateway:
    return SandboxGateway(webhook_secret=settings.payment_webhook_secret)


@pytest.fixture
async def services(settings, gateway):
    register_immutability_enforcement()
    services = build_services(settings, gateway=gateway)
    await init_db(services.engine)
    yield services
    await services.close()


@pytest.fixture
def customer() -> Principal:
    return Principal(user_id=uuid.uuid4(), role=ActorRole.CUSTOMER)


@pytest.fixture
def pro() -> Principal:
    return Principal(user_id=uuid.uuid4(), role=ActorRole.PRO, pro_id=uuid.uuid4())


@pytest.fixture
def booking_factory(services: Services, customer: Principal, pro: Principal):
    """Create a booking and walk it forward as the pro."""

    async def _create(
        status: BookingStatus = BookingStatus.REQUESTED,
        price: int = 12000,
        authorize: bool = False,
    ) -> Booking:
        booking = await services.bookings.create_booking(customer, pro.pro_id, price)
        if status != BookingStatus.REQUESTED:
            for step in WALK[: WALK.index(status) + 1]:
                await services.bookings.transition(booking.id, step, pro)
        if authorize:
            await services.bookings.authorize(booking.id, customer, "pm_card_visa")
        return await services.ledger.get(booking.id)

    return _create


@pytest.fixture
def notifications_of_type(services: Services) -> Callable[[str], Awaitable[list[Notification]]]:
    async def _query(notification_type: str) -> list[Notification]:
        async with services.session_maker() as session:
            result = await session.execute(
                select(Notification).where(Notification.notification_type == notification_type)
            )
            return list(result.scalars().all())

    return _query


@pytest.fixture
async def client(settings, services):
    app = create_application(settings)
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(settings) -> Callable[[Principal], dict[str, str]]:
    def _headers(principal: Principal) -> dict[str, str]:
        token = create_access_token(settings, principal.user_id, principal.role, pro_id=principal.pro_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers
