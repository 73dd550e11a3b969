"""Payment gateway selection.

Builds the configured gateway adapter. No business logic here - only gateway
coordination and the environment safety checks around it.
"""

import logging

from visitpay.config import Settings
from visitpay.gateways.base import GatewayType, PaymentGateway
from visitpay.gateways.sandbox import SandboxGateway
from visitpay.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

LIVE_KEY_PREFIXES = ("sk_live_", "rk_live_")


def _is_production(settings: Settings) -> bool:
    """Check if running in production environment."""
    return settings.environment == "production"


def _assert_gateway_allowed(settings: Settings, gateway_type: GatewayType) -> None:
    """Keep fake money out of production and real money out of everything else.

    Raises:
        RuntimeError: If the gateway/key combination does not match the environment
    """
    if gateway_type == GatewayType.SANDBOX and _is_production(settings):
        raise RuntimeError("The sandbox payment gateway cannot be used in production.")

    if gateway_type == GatewayType.STRIPE and not _is_production(settings):
        if settings.payment_gateway_secret.startswith(LIVE_KEY_PREFIXES):
            raise RuntimeError(
                f"Cannot use a live Stripe key in {settings.environment} environment. "
                "Set ENVIRONMENT=production or use a test key."
            )


def build_gateway(settings: Settings) -> PaymentGateway:
    """Create the gateway adapter named by ``settings.payment_gateway``."""
    gateway_type = GatewayType(settings.payment_gateway)
    _assert_gateway_allowed(settings, gateway_type)

    if gateway_type == GatewayType.STRIPE:
        gateway: PaymentGateway = StripeGateway(
            secret_key=settings.payment_gateway_secret,
            webhook_secret=settings.payment_webhook_secret,
            timeout=settings.gateway_timeout_seconds,
        )
    else:
        gateway = SandboxGateway(webhook_secret=settings.payment_webhook_secret)

    logger.info(f"Payment gateway initialised: {gateway_type.value} ({settings.environment})")
    return gateway
