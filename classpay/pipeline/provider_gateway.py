"""
Provider Gateway (Paystack)
===========================
Pure translation layer between the engine and the payment processor:

- initialize a transaction
- verify a transaction by reference
- authenticate and classify an inbound webhook

Credentials are resolved once per operation through the injected
``CredentialResolver``. No business state lives here.

pip install httpx structlog
"""

import hashlib
import hmac
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from classpay.config import CredentialResolver, PaystackConfig, make_credential_resolver
from classpay.errors import (
    AuthenticationError,
    ConfigurationError,
    ProviderRejected,
    ProviderUnavailable,
)
from classpay.schemas.models import (
    InitializedTransaction,
    VerificationStatus,
    VerifiedTransaction,
    WebhookClassification,
    WebhookEvent,
)

SIGNATURE_HEADER = "x-paystack-signature"

SUCCESS_EVENTS = frozenset({"charge.success", "transaction.success"})
FAILED_EVENTS = frozenset({"charge.failed", "transaction.failed"})


def classify_event(event_type: str) -> WebhookClassification:
    """Map a provider event name to what the engine does with it."""
    if event_type in SUCCESS_EVENTS:
        return WebhookClassification.SUCCESS
    if event_type in FAILED_EVENTS:
        return WebhookClassification.FAILED
    return WebhookClassification.UNHANDLED


def compute_signature(raw_body: bytes, secret: str) -> str:
    """HMAC-SHA512 hex digest of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


# =============================================================================
# INTERFACE
# =============================================================================

class IProviderGateway(ABC):

    @abstractmethod
    async def initialize_transaction(
        self,
        email: str,
        amount_cents: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> InitializedTransaction:
        pass

    @abstractmethod
    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        pass

    @abstractmethod
    async def authenticate_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        pass


# =============================================================================
# PAYSTACK
# =============================================================================

class PaystackGateway(IProviderGateway):
    """
    Paystack REST client over ``httpx.AsyncClient``.

    Error classification:
        missing secret key       -> ConfigurationError
        401                      -> ProviderRejected ("invalid API key")
        other 4xx                -> ProviderRejected (provider message verbatim)
        5xx, timeouts, transport -> ProviderUnavailable
    """

    def __init__(
        self,
        resolve_config: Optional[CredentialResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._resolve_config = resolve_config or make_credential_resolver()
        # Tests inject httpx.MockTransport here
        self._transport = transport
        self._logger = structlog.get_logger().bind(component="provider_gateway", provider="paystack")

    def _client(self, config: PaystackConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers={
                "Authorization": f"Bearer {config.secret_key}",
                "Content-Type": "application/json",
            },
            transport=self._transport,
        )

    async def _config_with_secret(self) -> PaystackConfig:
        config = await self._resolve_config()
        if not config.secret_key:
            raise ConfigurationError(
                "Paystack secret key is not configured. Set PAYSTACK_SECRET_KEY "
                "or the paystack_secret_key setting."
            )
        return config

    async def _request(self, config: PaystackConfig, method: str, path: str, **kwargs) -> dict:
        request_id = str(uuid.uuid4())[:8]
        log = self._logger.bind(request_id=request_id, method=method, path=path)

        try:
            async with self._client(config) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            log.error("provider_timeout", error=str(e))
            raise ProviderUnavailable("Timed out contacting Paystack") from e
        except httpx.TransportError as e:
            log.error("provider_transport_error", error=str(e), error_type=type(e).__name__)
            raise ProviderUnavailable(f"Could not reach Paystack: {e}") from e

        body = self._json_body(response)
        provider_message = body.get("message") if isinstance(body, dict) else None

        if response.status_code == 401:
            log.error("provider_unauthorized")
            raise ProviderRejected(
                "Invalid Paystack API key. Check the Paystack secret key configuration.",
                status_code=401,
            )
        if response.status_code >= 500:
            log.error("provider_server_error", status_code=response.status_code)
            raise ProviderUnavailable(
                provider_message or f"Paystack returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            log.warning("provider_rejected", status_code=response.status_code, message=provider_message)
            raise ProviderRejected(
                provider_message or "Invalid request to Paystack",
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            log.error("provider_invalid_response", status_code=response.status_code)
            raise ProviderUnavailable("Invalid response from Paystack")

        log.debug("provider_response", status_code=response.status_code)
        return body

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def initialize_transaction(
        self,
        email: str,
        amount_cents: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> InitializedTransaction:
        config = await self._config_with_secret()

        payload: dict[str, Any] = {
            "email": email,
            "amount": amount_cents,
            "reference": reference,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        if metadata:
            payload["metadata"] = metadata

        body = await self._request(config, "POST", "/transaction/initialize", json=payload)

        data = body.get("data")
        if not body.get("status") or not isinstance(data, dict) or not data.get("authorization_url"):
            raise ProviderRejected(body.get("message") or "Paystack did not initialize the transaction")

        self._logger.info("transaction_initialized", reference=data.get("reference", reference))
        return InitializedTransaction(
            authorization_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            access_code=data.get("access_code"),
        )

    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        config = await self._config_with_secret()
        body = await self._request(config, "GET", f"/transaction/verify/{reference}")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        provider_status = data.get("status")

        if body.get("status") is True and provider_status == "success":
            status = VerificationStatus.SUCCESS
        elif provider_status == "failed":
            status = VerificationStatus.FAILED
        else:
            status = VerificationStatus.OTHER

        customer = data.get("customer") or {}
        verified = VerifiedTransaction(
            reference=data.get("reference") or reference,
            status=status,
            amount_cents=int(data.get("amount") or 0),
            customer_email=customer.get("email"),
            provider_status=provider_status,
            gateway_response=data.get("gateway_response"),
        )
        self._logger.info(
            "transaction_verified",
            reference=verified.reference,
            status=verified.status.value,
            amount_cents=verified.amount_cents,
        )
        return verified

    async def authenticate_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        """
        Authenticate ``raw_body`` exactly as received, then parse it.

        The body must not be decoded and re-serialized before this call.
        """
        if not signature:
            self._logger.warning("webhook_signature_missing")
            raise AuthenticationError("Missing webhook signature")

        config = await self._resolve_config()
        if not config.webhook_secret:
            raise ConfigurationError("Paystack webhook secret is not configured")

        expected = compute_signature(raw_body, config.webhook_secret)
        if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8")):
            self._logger.warning(
                "webhook_signature_invalid",
                received=signature[:20] + "...",
                body_bytes=len(raw_body),
            )
            raise AuthenticationError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise AuthenticationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise AuthenticationError("Webhook body is not a JSON object")

        event_type = payload.get("event") or "unknown"
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

        return WebhookEvent(
            event=event_type,
            classification=classify_event(event_type),
            reference=data.get("reference"),
            data=data,
        )
