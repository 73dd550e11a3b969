"""Gateway adapters, gateway selection and startup configuration."""

import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta

import pydantic
import pytest

from visitpay.config import Settings
from visitpay.core.exceptions import AuthenticationError, GatewayUnavailable, InvalidWebhookSignature
from visitpay.core.security import create_access_token, principal_from_token
from visitpay.domain.booking_state import ActorRole
from visitpay.gateways.base import HoldStatus
from visitpay.gateways.sandbox import DECLINED_PAYMENT_METHOD, SandboxGateway
from visitpay.gateways.stripe_gateway import StripeGateway
from visitpay.services.gateway_service import build_gateway


class TestSandboxGateway:
    async def test_idempotency_key_returns_original_hold(self):
        gateway = SandboxGateway("whsec")

        first = await gateway.authorize(12000, "usd", "pm_card_visa", idempotency_key="b-1")
        second = await gateway.authorize(12000, "usd", "pm_card_visa", idempotency_key="b-1")

        assert first.hold_id == second.hold_id
        assert first.status == HoldStatus.REQUIRES_CAPTURE
        assert len(gateway.holds) == 1

    async def test_declined_card_is_a_result_not_an_error(self):
        gateway = SandboxGateway("whsec")

        result = await gateway.authorize(12000, "usd", DECLINED_PAYMENT_METHOD, idempotency_key="b-1")

        assert result.success is False
        assert result.error_message

    async def test_capture_outage_raises_and_recovers(self):
        gateway = SandboxGateway("whsec")
        hold = await gateway.authorize(12000, "usd", "pm_card_visa", idempotency_key="b-1")
        gateway.capture_failures = 1

        with pytest.raises(GatewayUnavailable):
            await gateway.capture(hold.hold_id, idempotency_key="b-1")
        first = await gateway.capture(hold.hold_id, idempotency_key="b-1")
        again = await gateway.capture(hold.hold_id, idempotency_key="b-1")

        assert first.success and again.success
        assert gateway.holds[hold.hold_id].capture_count == 1

    async def test_captured_hold_cannot_be_released(self):
        gateway = SandboxGateway("whsec")
        hold = await gateway.authorize(12000, "usd", "pm_card_visa", idempotency_key="b-1")
        await gateway.capture(hold.hold_id, idempotency_key="b-1")

        result = await gateway.release(hold.hold_id)

        assert result.success is False

    def test_signed_event_verifies(self):
        gateway = SandboxGateway("whsec")
        body, signature = gateway.build_event("hold.captured", "hold_1", event_id="evt_1")

        event = gateway.verify_webhook(body, signature)

        assert (event.event_id, event.type, event.hold_id) == ("evt_1", "hold.captured", "hold_1")

    def test_wrong_secret_is_rejected(self):
        body, signature = SandboxGateway("other").build_event("hold.captured", "hold_1")

        with pytest.raises(InvalidWebhookSignature):
            SandboxGateway("whsec").verify_webhook(body, signature)

    def test_stale_signature_is_rejected(self):
        gateway = SandboxGateway("whsec")
        body, _ = gateway.build_event("hold.captured", "hold_1")
        stale = gateway.sign(body, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidWebhookSignature):
            gateway.verify_webhook(body, stale)

    def test_malformed_header_is_rejected(self):
        gateway = SandboxGateway("whsec")
        body, _ = gateway.build_event("hold.captured", "hold_1")

        with pytest.raises(InvalidWebhookSignature):
            gateway.verify_webhook(body, "garbage")


class TestStripeWebhook:
    def _signed(self, secret: str, payload: dict) -> tuple[bytes, str]:
        body = json.dumps(payload).encode()
        timestamp = int(time.time())
        digest = hmac.new(
            secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256
        ).hexdigest()
        return body, f"t={timestamp},v1={digest}"

    def test_payment_intent_event_is_normalised(self):
        gateway = StripeGateway("sk_test_123", "whsec_test")
        body, signature = self._signed(
            "whsec_test",
            {
                "id": "evt_123",
                "object": "event",
                "type": "payment_intent.succeeded",
                "data": {
                    "object": {
                        "id": "pi_123",
                        "object": "payment_intent",
                        "status": "succeeded",
                        "metadata": {"booking_id": "b-1"},
                    }
                },
            },
        )

        event = gateway.verify_webhook(body, signature)

        assert event.event_id == "evt_123"
        assert event.type == "hold.captured"
        assert event.hold_id == "pi_123"

    def test_bad_signature_is_rejected(self):
        gateway = StripeGateway("sk_test_123", "whsec_test")
        body, signature = self._signed("whsec_other", {"id": "evt_1", "object": "event"})

        with pytest.raises(InvalidWebhookSignature):
            gateway.verify_webhook(body, signature)


class TestGatewaySelection:
    def _settings(self, **overrides) -> Settings:
        values = {
            "_env_file": None,
            "payment_gateway_secret": "sk_test_123",
            "payment_webhook_secret": "whsec_test",
        }
        values.update(overrides)
        return Settings(**values)

    def test_sandbox_refused_in_production(self):
        with pytest.raises(RuntimeError):
            build_gateway(self._settings(payment_gateway="sandbox", environment="production"))

    def test_live_key_refused_outside_production(self):
        with pytest.raises(RuntimeError):
            build_gateway(
                self._settings(payment_gateway="stripe", payment_gateway_secret="sk_live_abc")
            )

    def test_builds_configured_gateway(self):
        assert isinstance(build_gateway(self._settings(payment_gateway="sandbox")), SandboxGateway)
        assert isinstance(build_gateway(self._settings(payment_gateway="stripe")), StripeGateway)


class TestStartupConfiguration:
    def test_payment_secrets_are_required(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_GATEWAY_SECRET", raising=False)
        monkeypatch.delenv("PAYMENT_WEBHOOK_SECRET", raising=False)

        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None)

    def test_empty_webhook_secret_is_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None, payment_gateway_secret="sk_test_123", payment_webhook_secret="")


class TestPrincipalTokens:
    def test_round_trip(self, settings):
        pro_id = uuid.uuid4()
        token = create_access_token(settings, uuid.uuid4(), ActorRole.PRO, pro_id=pro_id)

        principal = principal_from_token(settings, token)

        assert principal.role == ActorRole.PRO
        assert principal.pro_id == pro_id

    def test_system_role_is_never_accepted(self, settings):
        token = create_access_token(settings, uuid.uuid4(), ActorRole.SYSTEM)

        with pytest.raises(AuthenticationError):
            principal_from_token(settings, token)

    def test_pro_token_needs_pro_id(self, settings):
        token = create_access_token(settings, uuid.uuid4(), ActorRole.PRO)

        with pytest.raises(AuthenticationError):
            principal_from_token(settings, token)

    def test_expired_token(self, settings):
        token = create_access_token(
            settings, uuid.uuid4(), ActorRole.CUSTOMER, expires_delta=timedelta(minutes=-1)
        )

        with pytest.raises(AuthenticationError):
            principal_from_token(settings, token)
