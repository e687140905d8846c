"""Tests for the HTTP surface, run in-process through httpx.ASGITransport."""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from classpay.api.server import app, build_services
from classpay.schemas.models import ClassStatus, ParentProfile, Registration, StudentDescriptor

from tests.conftest import sign


@pytest_asyncio.fixture
async def client(store, gateway, notifier):
    app.state.services = build_services(store, gateway=gateway, notifier=notifier)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.state.services = None


def _attempt_payload(class_id: str, **overrides) -> dict:
    payload = {
        "class_id": class_id,
        "parent_name": "Akosua Mensah",
        "parent_email": "parent@example.com",
        "students": [{"name": "Ama"}, {"name": "Kofi"}],
        "amount_cents": 1000,
    }
    payload.update(overrides)
    return payload


async def _paid_attempt(client, gateway, class_id: str) -> tuple[str, str]:
    created = await client.post("/api/payments/attempts", json=_attempt_payload(class_id))
    attempt_id = created.json()["attempt"]["id"]
    initialized = await client.post("/api/payments/initialize", json={"paymentAttemptId": attempt_id})
    reference = initialized.json()["reference"]
    gateway.succeed(reference, 1000)
    return attempt_id, reference


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Response-Time-Ms" in response.headers


class TestCheckoutEndpoints:

    @pytest.mark.asyncio
    async def test_create_attempt(self, client, bootcamp):
        response = await client.post("/api/payments/attempts", json=_attempt_payload(bootcamp.id))

        assert response.status_code == 201
        attempt = response.json()["attempt"]
        assert attempt["status"] == "PENDING"
        assert attempt["student_count"] == 2

    @pytest.mark.asyncio
    async def test_create_attempt_unknown_class(self, client):
        response = await client.post("/api/payments/attempts", json=_attempt_payload("missing"))

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": {"code": "class_not_found", "message": "Class not found: missing"},
        }

    @pytest.mark.asyncio
    async def test_create_attempt_unpublished(self, client, add_class):
        draft = await add_class(status=ClassStatus.DRAFT)

        response = await client.post("/api/payments/attempts", json=_attempt_payload(draft.id))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_create_attempt_full(self, client, add_class):
        tiny = await add_class(capacity=1)

        response = await client.post("/api/payments/attempts", json=_attempt_payload(tiny.id))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "class_full"

    @pytest.mark.asyncio
    async def test_create_attempt_validation(self, client, bootcamp):
        response = await client.post(
            "/api/payments/attempts", json=_attempt_payload(bootcamp.id, students=[])
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_initialize(self, client, bootcamp):
        created = await client.post("/api/payments/attempts", json=_attempt_payload(bootcamp.id))
        attempt_id = created.json()["attempt"]["id"]

        response = await client.post("/api/payments/initialize", json={"paymentAttemptId": attempt_id})

        assert response.status_code == 200
        body = response.json()
        assert body["authorizationUrl"].startswith("https://checkout.paystack.com/")
        assert body["reference"].startswith(f"ATTEMPT-{attempt_id}-")

    @pytest.mark.asyncio
    async def test_initialize_unknown_attempt(self, client):
        response = await client.post("/api/payments/initialize", json={"paymentAttemptId": "missing"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "attempt_not_found"

    @pytest.mark.asyncio
    async def test_verify_then_callback(self, client, gateway, bootcamp):
        """Test POST verify completes and the redirect GET sees it already done."""
        _, reference = await _paid_attempt(client, gateway, bootcamp.id)

        first = await client.post("/api/payments/verify", json={"reference": reference})
        second = await client.get(f"/api/payments/verify/{reference}")

        assert first.status_code == 200
        assert first.json()["outcome"] == "COMPLETED"
        assert first.json()["success"] is True
        assert len(first.json()["registrations"]) == 2
        assert second.status_code == 200
        assert second.json()["outcome"] == "ALREADY_COMPLETED"

    @pytest.mark.asyncio
    async def test_verify_unpaid_is_soft_failure(self, client, bootcamp):
        created = await client.post("/api/payments/attempts", json=_attempt_payload(bootcamp.id))
        attempt_id = created.json()["attempt"]["id"]
        initialized = await client.post("/api/payments/initialize", json={"paymentAttemptId": attempt_id})

        response = await client.post(
            "/api/payments/verify", json={"reference": initialized.json()["reference"]}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "VERIFICATION_FAILED"
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_verify_unknown_reference(self, client):
        response = await client.get("/api/payments/verify/T-NOTHING")

        assert response.status_code == 404


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_invalid_signature_is_400(self, client):
        body = json.dumps({"event": "charge.success", "data": {"reference": "x"}}).encode()

        response = await client.post(
            "/api/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": "0" * 128, "content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "authentication_error"

    @pytest.mark.asyncio
    async def test_signed_success_event(self, client, gateway, store, bootcamp):
        attempt_id, reference = await _paid_attempt(client, gateway, bootcamp.id)
        body = json.dumps({"event": "charge.success", "data": {"reference": reference}}).encode()

        response = await client.post(
            "/api/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": sign(body), "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "COMPLETED"
        assert len(await store.registrations.list_for_attempt(attempt_id)) == 2

    @pytest.mark.asyncio
    async def test_unhandled_event_is_200(self, client):
        body = json.dumps({"event": "subscription.create", "data": {}}).encode()

        response = await client.post(
            "/api/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": sign(body)},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True


class TestAdminEndpoints:

    @pytest.mark.asyncio
    async def test_list_and_detail(self, client, gateway, bootcamp):
        attempt_id, reference = await _paid_attempt(client, gateway, bootcamp.id)
        await client.post("/api/payments/verify", json={"reference": reference})

        listing = await client.get(
            "/api/admin/payment-attempts", params={"status": "COMPLETED", "class_id": bootcamp.id}
        )
        detail = await client.get(f"/api/admin/payment-attempts/{attempt_id}")

        assert listing.status_code == 200
        assert listing.json()["total"] == 1
        assert listing.json()["attempts"][0]["id"] == attempt_id
        assert detail.status_code == 200
        assert len(detail.json()["registrations"]) == 2

    @pytest.mark.asyncio
    async def test_detail_missing(self, client):
        response = await client.get("/api/admin/payment-attempts/missing")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_update_notes(self, client, bootcamp):
        created = await client.post("/api/payments/attempts", json=_attempt_payload(bootcamp.id))
        attempt_id = created.json()["attempt"]["id"]

        response = await client.patch(
            f"/api/admin/payment-attempts/{attempt_id}/notes", json={"notes": "Called parent"}
        )

        assert response.status_code == 200
        assert response.json()["attempt"]["notes"] == "Called parent"

    @pytest.mark.asyncio
    async def test_cancel_pending_then_completed(self, client, gateway, bootcamp):
        created = await client.post("/api/payments/attempts", json=_attempt_payload(bootcamp.id))
        pending_id = created.json()["attempt"]["id"]
        paid_id, reference = await _paid_attempt(client, gateway, bootcamp.id)
        await client.post("/api/payments/verify", json={"reference": reference})

        cancelled = await client.post(f"/api/admin/payment-attempts/{pending_id}/cancel")
        refused = await client.post(f"/api/admin/payment-attempts/{paid_id}/cancel")

        assert cancelled.status_code == 200
        assert cancelled.json()["attempt"]["status"] == "CANCELLED"
        assert refused.status_code == 409
        assert refused.json()["error"]["code"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_manual_review_queue(self, client, gateway, add_class):
        tiny = await add_class(capacity=2)
        _, first = await _paid_attempt(client, gateway, tiny.id)
        _, second = await _paid_attempt(client, gateway, tiny.id)

        await client.post("/api/payments/verify", json={"reference": first})
        result = await client.post("/api/payments/verify", json={"reference": second})
        queue = await client.get("/api/admin/manual-review")

        assert result.status_code == 200
        assert result.json()["outcome"] == "CAPACITY_EXCEEDED_POST_PAYMENT"
        assert result.json()["requires_manual_review"] is True
        assert len(queue.json()["items"]) == 1


async def _unpaid_registration(store, class_id: str) -> Registration:
    parent = await store.parties.find_or_create_parent(
        "parent@example.com", ParentProfile(name="Akosua Mensah", email="parent@example.com")
    )
    student = await store.parties.find_or_create_student(parent.id, StudentDescriptor(name="Ama"))
    return await store.registrations.insert(
        Registration(class_id=class_id, parent_id=parent.id, student_id=student.id)
    )


class TestPaymentReminderEndpoints:

    @pytest.mark.asyncio
    async def test_pending_list(self, client, store, bootcamp):
        registration = await _unpaid_registration(store, bootcamp.id)

        response = await client.get("/api/admin/payment-reminders/pending", params={"class_id": bootcamp.id})

        assert response.status_code == 200
        assert [item["registration_id"] for item in response.json()["items"]] == [registration.id]

    @pytest.mark.asyncio
    async def test_send_single(self, client, store, notifier, bootcamp):
        registration = await _unpaid_registration(store, bootcamp.id)

        response = await client.post(f"/api/admin/payment-reminders/send/{registration.id}")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert len(notifier.emails()) == 1

    @pytest.mark.asyncio
    async def test_send_single_errors(self, client, store, bootcamp):
        registration = await _unpaid_registration(store, bootcamp.id)
        await store.registrations.mark_paid([registration.id])

        missing = await client.post("/api/admin/payment-reminders/send/missing")
        paid = await client.post(f"/api/admin/payment-reminders/send/{registration.id}")

        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "registration_not_found"
        assert paid.status_code == 400
        assert paid.json()["error"]["code"] == "reminder_not_applicable"

    @pytest.mark.asyncio
    async def test_send_bulk(self, client, store, notifier, bootcamp):
        registration = await _unpaid_registration(store, bootcamp.id)

        response = await client.post(
            "/api/admin/payment-reminders/send-bulk",
            json={"registrationIds": [registration.id, "missing"]},
        )
        empty = await client.post("/api/admin/payment-reminders/send-bulk", json={"registrationIds": []})

        assert response.status_code == 200
        assert response.json()["sent"] == [registration.id]
        assert list(response.json()["failed"]) == ["missing"]
        assert empty.status_code == 422


class TestLogEndpoints:

    @pytest.mark.asyncio
    async def test_notification_logs_filtered_by_status(self, client, store, notifier, bootcamp):
        registration = await _unpaid_registration(store, bootcamp.id)
        await client.post(f"/api/admin/payment-reminders/send/{registration.id}")
        notifier.failing = True
        await client.post(f"/api/admin/payment-reminders/send/{registration.id}")

        everything = await client.get("/api/admin/notification-logs")
        failed = await client.get("/api/admin/notification-logs", params={"status": "FAILED"})

        assert everything.status_code == 200
        assert len(everything.json()["items"]) == 2
        assert [log["status"] for log in failed.json()["items"]] == ["FAILED"]
        assert failed.json()["items"][0]["error_message"] == "smtp unavailable"

    @pytest.mark.asyncio
    async def test_webhook_logs_show_rejected_deliveries(self, client):
        body = json.dumps({"event": "charge.success", "data": {"reference": "x"}}).encode()
        await client.post("/api/webhooks/paystack", content=body, headers={"x-paystack-signature": "bad"})
        unhandled = json.dumps({"event": "subscription.create", "data": {}}).encode()
        await client.post("/api/webhooks/paystack", content=unhandled, headers={"x-paystack-signature": sign(unhandled)})

        everything = await client.get("/api/admin/webhook-logs")
        errors = await client.get("/api/admin/webhook-logs", params={"status": "ERROR"})

        assert everything.status_code == 200
        assert len(everything.json()["items"]) == 2
        assert [log["status"] for log in errors.json()["items"]] == ["ERROR"]
