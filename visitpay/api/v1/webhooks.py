"""Webhook endpoints for the payment gateway."""

from fastapi import APIRouter, Header, Request, status

from visitpay.api.deps import ReconcilerDep
from visitpay.schemas.booking import WebhookAck

router = APIRouter()


@router.post("/payment", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def payment_webhook(
    request: Request,
    reconciler: ReconcilerDep,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    payment_signature: str | None = Header(None, alias="Payment-Signature"),
) -> WebhookAck:
    """Handle payment gateway events.

    Anything other than a 2xx makes the gateway redeliver the event.
    """
    # Get raw body for signature verification
    payload = await request.body()

    result = await reconciler.handle(payload, stripe_signature or payment_signature)
    return WebhookAck(event_id=result.event_id, outcome=result.outcome.value)
