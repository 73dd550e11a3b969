"""API dependencies for authentication and service access."""

from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from visitpay.bootstrap import Services
from visitpay.core.exceptions import AuthenticationError
from visitpay.core.security import Principal, principal_from_token
from visitpay.services.booking_service import BookingService
from visitpay.services.webhook_reconciler import WebhookReconciler

# Security scheme
security = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    """Services built by the application lifespan."""
    return request.app.state.services


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    services: Annotated[Services, Depends(get_services)],
) -> Principal:
    """Get the authenticated caller from the bearer token."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    return principal_from_token(services.settings, credentials.credentials)


def get_booking_service(services: Annotated[Services, Depends(get_services)]) -> BookingService:
    return services.bookings


def get_reconciler(services: Annotated[Services, Depends(get_services)]) -> WebhookReconciler:
    return services.reconciler


# Type aliases for cleaner route signatures
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
BookingServiceDep = Annotated[BookingService, Depends(get_booking_service)]
ReconcilerDep = Annotated[WebhookReconciler, Depends(get_reconciler)]
