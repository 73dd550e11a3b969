"""Notification endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from visitpay.api.deps import CurrentPrincipal, get_services
from visitpay.bootstrap import Services
from visitpay.core.security import Principal
from visitpay.domain.booking_state import ActorRole
from visitpay.schemas.notification import NotificationListResponse, NotificationResponse
from visitpay.services.notification_service import NotificationService, Recipient

router = APIRouter()


def get_notification_service(
    services: Annotated[Services, Depends(get_services)],
) -> NotificationService:
    return NotificationService(services.session_maker)


def _recipient(principal: Principal) -> Recipient:
    # Pros are notified under their pro profile id.
    if principal.role == ActorRole.PRO and principal.pro_id:
        return Recipient(principal.pro_id, ActorRole.PRO)
    return Recipient(principal.user_id, principal.role)


@router.get("", response_model=NotificationListResponse)
async def get_notifications(
    principal: CurrentPrincipal,
    notifications: Annotated[NotificationService, Depends(get_notification_service)],
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=100),
) -> NotificationListResponse:
    """Get the caller's notifications, newest first."""
    rows = await notifications.list_for(_recipient(principal), unread_only=unread_only, limit=limit)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in rows],
        unread_count=sum(1 for n in rows if not n.read),
    )


@router.patch("/{notification_id}/read", status_code=204)
async def mark_notification_read(
    notification_id: UUID,
    principal: CurrentPrincipal,
    notifications: Annotated[NotificationService, Depends(get_notification_service)],
) -> None:
    """Mark a notification as read."""
    await notifications.mark_read(_recipient(principal), notification_id)
