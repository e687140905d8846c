"""Shared fixtures: in-memory store, a scripted provider gateway and a recording notifier."""

from datetime import timedelta
from typing import Optional

import pytest
import pytest_asyncio

from classpay.config import PaystackConfig
from classpay.pipeline.attempts import PaymentAttemptStore
from classpay.pipeline.notifications import NotificationDispatcher, Notifier
from classpay.pipeline.provider_gateway import IProviderGateway, PaystackGateway, compute_signature
from classpay.pipeline.reconciliation import ReconciliationEngine
from classpay.schemas.models import (
    ClassInfo,
    CreateAttemptRequest,
    InitializedTransaction,
    NotificationChannel,
    StudentDescriptor,
    VerificationStatus,
    VerifiedTransaction,
    WebhookEvent,
    utcnow,
)
from classpay.storage.memory import build_memory_store

TEST_SECRET_KEY = "sk_test_classpay"
TEST_WEBHOOK_SECRET = "whsec_classpay"


async def resolve_test_config() -> PaystackConfig:
    return PaystackConfig(secret_key=TEST_SECRET_KEY, webhook_secret=TEST_WEBHOOK_SECRET)


def sign(raw_body: bytes) -> str:
    return compute_signature(raw_body, TEST_WEBHOOK_SECRET)


class FakeGateway(IProviderGateway):
    """
    Scripted provider. References are unpaid until ``succeed`` or ``fail``
    is called for them. Webhook authentication is the real HMAC check.
    """

    def __init__(self):
        self.initialized: list[dict] = []
        self.verify_calls: list[str] = []
        self._results: dict[str, VerifiedTransaction] = {}
        self._authenticator = PaystackGateway(resolve_config=resolve_test_config)

    def succeed(self, reference: str, amount_cents: int) -> None:
        self._results[reference] = VerifiedTransaction(
            reference=reference,
            status=VerificationStatus.SUCCESS,
            amount_cents=amount_cents,
            provider_status="success",
            gateway_response="Successful",
        )

    def fail(self, reference: str) -> None:
        self._results[reference] = VerifiedTransaction(
            reference=reference,
            status=VerificationStatus.FAILED,
            provider_status="failed",
            gateway_response="Declined",
        )

    async def initialize_transaction(
        self,
        email: str,
        amount_cents: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> InitializedTransaction:
        self.initialized.append({
            "email": email,
            "amount_cents": amount_cents,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
        })
        return InitializedTransaction(
            authorization_url=f"https://checkout.paystack.com/{reference[-8:]}",
            reference=reference,
            access_code="ac_test",
        )

    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        self.verify_calls.append(reference)
        return self._results.get(reference) or VerifiedTransaction(
            reference=reference,
            status=VerificationStatus.OTHER,
            provider_status="abandoned",
        )

    async def authenticate_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        return await self._authenticator.authenticate_webhook(raw_body, signature)


class FakeNotifier(Notifier):
    """Records deliveries; raises when ``failing`` is set."""

    def __init__(self):
        self.sent: list[dict] = []
        self.failing = False

    async def send(self, channel, to_address, subject, body) -> None:
        if self.failing:
            raise RuntimeError("smtp unavailable")
        self.sent.append({"channel": channel, "to": to_address, "subject": subject, "body": body})

    def emails(self) -> list[dict]:
        return [m for m in self.sent if m["channel"] == NotificationChannel.EMAIL]

    def sms(self) -> list[dict]:
        return [m for m in self.sent if m["channel"] == NotificationChannel.SMS]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return build_memory_store()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def notifications(store, notifier):
    return NotificationDispatcher(notifier, store.notification_logs)


@pytest.fixture
def attempts(store, gateway):
    return PaymentAttemptStore(
        store,
        gateway,
        ttl_hours=24,
        callback_url="http://localhost:3005/payment-success",
    )


@pytest.fixture
def engine(store, gateway, attempts, notifications):
    return ReconciliationEngine(store, gateway, attempts, notifications)


@pytest.fixture
def add_class(store):
    async def _add(capacity: int = 10, **overrides) -> ClassInfo:
        fields = {
            "title": "Python Bootcamp",
            "capacity": capacity,
            "price_cents": 50000,
            "start_datetime": utcnow() + timedelta(days=7),
            "meeting_link": "https://meet.example.com/bootcamp",
        }
        fields.update(overrides)
        return await store.classes.add(ClassInfo(**fields))

    return _add


@pytest_asyncio.fixture
async def bootcamp(add_class):
    return await add_class(capacity=10)


def attempt_request(
    class_id: str,
    students=("Ama Mensah",),
    amount_cents: int = 1000,
    email: str = "parent@example.com",
    phone: Optional[str] = None,
) -> CreateAttemptRequest:
    return CreateAttemptRequest(
        class_id=class_id,
        parent_name="Akosua Mensah",
        parent_email=email,
        parent_phone=phone,
        students=[StudentDescriptor(name=name) for name in students],
        amount_cents=amount_cents,
    )


@pytest.fixture
def checkout(attempts):
    """Create and initialize an attempt; returns (attempt, reference)."""

    async def _checkout(class_id: str, **kwargs):
        attempt = await attempts.create_attempt(attempt_request(class_id, **kwargs))
        transaction = await attempts.initialize_payment(attempt.id)
        return await attempts.get_attempt(attempt.id), transaction.reference

    return _checkout
