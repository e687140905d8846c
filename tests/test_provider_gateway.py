"""Tests for the Paystack gateway: HTTP error mapping, verification and webhook auth.

The provider is replaced by ``httpx.MockTransport``; no network access.
"""

import json

import httpx
import pytest

from classpay.config import PaystackConfig, make_credential_resolver
from classpay.errors import (
    AuthenticationError,
    ConfigurationError,
    ProviderRejected,
    ProviderUnavailable,
)
from classpay.pipeline.provider_gateway import PaystackGateway, classify_event
from classpay.schemas.models import VerificationStatus, WebhookClassification

from tests.conftest import TEST_SECRET_KEY, resolve_test_config, sign


def _gateway(handler, resolve_config=resolve_test_config) -> PaystackGateway:
    return PaystackGateway(resolve_config=resolve_config, transport=httpx.MockTransport(handler))


def _verify_body(status: str, amount: int = 1000, reference: str = "ref-1") -> dict:
    return {
        "status": True,
        "message": "Verification successful",
        "data": {
            "reference": reference,
            "status": status,
            "amount": amount,
            "gateway_response": "Approved" if status == "success" else "Declined",
            "customer": {"email": "parent@example.com"},
        },
    }


class TestInitializeTransaction:
    """Tests for POST /transaction/initialize."""

    @pytest.mark.asyncio
    async def test_initialize_sends_amount_and_reference(self):
        """Test the request carries the minor-unit amount, reference and bearer key."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "ATTEMPT-x-1",
                },
            })

        transaction = await _gateway(handler).initialize_transaction(
            email="parent@example.com",
            amount_cents=50000,
            reference="ATTEMPT-x-1",
            callback_url="http://localhost:3005/payment-success",
            metadata={"paymentAttemptId": "x"},
        )

        assert transaction.authorization_url == "https://checkout.paystack.com/abc"
        assert transaction.reference == "ATTEMPT-x-1"
        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == f"Bearer {TEST_SECRET_KEY}"
        assert seen["body"]["amount"] == 50000
        assert seen["body"]["metadata"] == {"paymentAttemptId": "x"}

    @pytest.mark.asyncio
    async def test_missing_secret_key_is_configuration_error(self):
        """Test no request is made without a secret key."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        async def empty_config():
            return PaystackConfig(secret_key="", webhook_secret="")

        with pytest.raises(ConfigurationError):
            await _gateway(handler, empty_config).initialize_transaction("a@b.co", 100, "ref")
        assert calls == []

    @pytest.mark.asyncio
    async def test_unauthorized_is_rejected(self):
        """Test a 401 maps to ProviderRejected with an API-key message."""
        def handler(request):
            return httpx.Response(401, json={"status": False, "message": "Invalid key"})

        with pytest.raises(ProviderRejected) as exc_info:
            await _gateway(handler).initialize_transaction("a@b.co", 100, "ref")
        assert exc_info.value.status_code == 401
        assert "API key" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_client_error_message_is_verbatim(self):
        """Test other 4xx responses surface the provider message unchanged."""
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Duplicate Transaction Reference"})

        with pytest.raises(ProviderRejected) as exc_info:
            await _gateway(handler).initialize_transaction("a@b.co", 100, "ref")
        assert exc_info.value.message == "Duplicate Transaction Reference"
        assert exc_info.value.http_status == 400

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        """Test a 5xx maps to ProviderUnavailable."""
        def handler(request):
            return httpx.Response(503, text="upstream down")

        with pytest.raises(ProviderUnavailable) as exc_info:
            await _gateway(handler).initialize_transaction("a@b.co", 100, "ref")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self):
        """Test connection failures map to ProviderUnavailable."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable):
            await _gateway(handler).initialize_transaction("a@b.co", 100, "ref")


class TestVerifyTransaction:
    """Tests for GET /transaction/verify/{reference}."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider_status,expected", [
        ("success", VerificationStatus.SUCCESS),
        ("failed", VerificationStatus.FAILED),
        ("abandoned", VerificationStatus.OTHER),
    ])
    async def test_status_mapping(self, provider_status, expected):
        """Test provider statuses map to success, failed or other."""
        def handler(request):
            assert request.url.path == "/transaction/verify/ref-1"
            return httpx.Response(200, json=_verify_body(provider_status))

        verified = await _gateway(handler).verify_transaction("ref-1")

        assert verified.status == expected
        assert verified.amount_cents == 1000
        assert verified.customer_email == "parent@example.com"


class TestAuthenticateWebhook:
    """Tests for HMAC-SHA512 webhook authentication."""

    BODY = json.dumps({"event": "charge.success", "data": {"reference": "ref-1", "amount": 1000}}).encode()

    @pytest.mark.asyncio
    async def test_valid_signature(self):
        """Test a correctly signed body is parsed and classified."""
        gateway = PaystackGateway(resolve_config=resolve_test_config)

        event = await gateway.authenticate_webhook(self.BODY, sign(self.BODY))

        assert event.event == "charge.success"
        assert event.reference == "ref-1"
        assert event.classification == WebhookClassification.SUCCESS

    @pytest.mark.asyncio
    async def test_single_tampered_byte_is_rejected(self):
        """Test flipping one byte of the body invalidates the signature."""
        gateway = PaystackGateway(resolve_config=resolve_test_config)
        signature = sign(self.BODY)
        tampered = self.BODY.replace(b"1000", b"9000")

        with pytest.raises(AuthenticationError):
            await gateway.authenticate_webhook(tampered, signature)

    @pytest.mark.asyncio
    async def test_missing_signature(self):
        """Test a missing header is rejected before any secret lookup."""
        gateway = PaystackGateway(resolve_config=resolve_test_config)

        with pytest.raises(AuthenticationError):
            await gateway.authenticate_webhook(self.BODY, None)

    def test_classify_event(self):
        """Test event names map to their handling class."""
        assert classify_event("charge.success") == WebhookClassification.SUCCESS
        assert classify_event("transaction.failed") == WebhookClassification.FAILED
        assert classify_event("transfer.success") == WebhookClassification.UNHANDLED


class TestCredentialResolver:
    """Tests for settings-store-first credential resolution."""

    @pytest.mark.asyncio
    async def test_settings_store_wins(self, monkeypatch):
        """Test settings-store values override the environment."""
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_env")

        class Settings:
            async def get(self, key):
                return {"paystack_secret_key": "sk_admin"}.get(key)

        config = await make_credential_resolver(Settings())()

        assert config.secret_key == "sk_admin"

    @pytest.mark.asyncio
    async def test_failing_settings_store_falls_back_to_env(self, monkeypatch):
        """Test an unavailable settings store does not break resolution."""
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_env")

        class BrokenSettings:
            async def get(self, key):
                raise RuntimeError("settings table missing")

        config = await make_credential_resolver(BrokenSettings())()

        assert config.secret_key == "sk_env"
