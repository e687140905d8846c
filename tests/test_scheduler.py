"""Tests for the expiry and reminder sweeps."""

import asyncio
from datetime import timedelta

import pytest

from classpay.config import SchedulerConfig
from classpay.errors import RegistrationNotFound, ReminderNotApplicable
from classpay.schemas.models import (
    AttemptStatus,
    ClassType,
    ParentProfile,
    PaymentAttempt,
    Registration,
    StudentDescriptor,
    TemplateKey,
    utcnow,
)
from classpay.tasks.scheduler import ExpirySweep, ReminderSweep, Scheduler, matching_day_offset

from tests.conftest import attempt_request

OFFSETS = [1, 3, 7, 14, 30]
WINDOW = timedelta(hours=6)


@pytest.fixture
def reminders(store, notifications):
    return ReminderSweep(store, notifications, SchedulerConfig())


async def _unpaid_registration(store, class_id, created_at, phone=None) -> Registration:
    parent = await store.parties.find_or_create_parent(
        "parent@example.com",
        ParentProfile(name="Akosua Mensah", email="parent@example.com", phone=phone),
    )
    student = await store.parties.find_or_create_student(parent.id, StudentDescriptor(name="Ama"))
    return await store.registrations.insert(Registration(
        class_id=class_id,
        parent_id=parent.id,
        student_id=student.id,
        created_at=created_at,
    ))


class TestDayOffsets:

    def test_matches_inside_window(self):
        now = utcnow()
        assert matching_day_offset(now - timedelta(days=1, hours=2), now, OFFSETS, WINDOW) == 1
        assert matching_day_offset(now - timedelta(days=14), now, OFFSETS, WINDOW) == 14

    def test_outside_window(self):
        now = utcnow()
        assert matching_day_offset(now - timedelta(days=1, hours=7), now, OFFSETS, WINDOW) is None

    def test_day_not_in_offsets(self):
        now = utcnow()
        assert matching_day_offset(now - timedelta(days=2, hours=1), now, OFFSETS, WINDOW) is None
        assert matching_day_offset(now - timedelta(hours=3), now, OFFSETS, WINDOW) is None

    def test_future_creation(self):
        now = utcnow()
        assert matching_day_offset(now + timedelta(hours=1), now, OFFSETS, WINDOW) is None


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_expires_past_attempts(self, attempts, bootcamp):
        attempt = await attempts.create_attempt(attempt_request(bootcamp.id))
        sweep = ExpirySweep(attempts)

        assert await sweep.run(utcnow()) == 0
        assert await sweep.run(utcnow() + timedelta(hours=25)) == 1
        assert await sweep.run(utcnow() + timedelta(hours=25)) == 0
        assert (await attempts.get_attempt(attempt.id)).status == AttemptStatus.EXPIRED


class TestPaymentReminders:

    @pytest.mark.asyncio
    async def test_second_pass_is_deduplicated(self, store, reminders, notifier, bootcamp):
        """Test two passes inside the dedupe window send one reminder."""
        now = utcnow()
        await _unpaid_registration(store, bootcamp.id, now - timedelta(days=1, hours=1))

        first = await reminders.run_payment_reminders(now)
        second = await reminders.run_payment_reminders(now + timedelta(hours=3))

        assert first == {"sent": 1, "skipped": 0, "failed": 0}
        assert second == {"sent": 0, "skipped": 1, "failed": 0}
        assert len(notifier.emails()) == 1
        assert "register/" + bootcamp.id in notifier.emails()[0]["body"]
        assert "500.00" in notifier.emails()[0]["body"]

    @pytest.mark.asyncio
    async def test_links_to_open_checkout(self, store, reminders, notifier, bootcamp, checkout):
        """Test the reminder points at the parent's latest pending checkout."""
        now = utcnow()
        attempt, _ = await checkout(bootcamp.id)
        await _unpaid_registration(store, bootcamp.id, now - timedelta(days=3, hours=2))

        await reminders.run_payment_reminders(now)

        assert attempt.payment_url in notifier.emails()[0]["body"]

    @pytest.mark.asyncio
    async def test_sms_when_phone_known(self, store, reminders, notifier, bootcamp):
        now = utcnow()
        await _unpaid_registration(store, bootcamp.id, now - timedelta(days=7), phone="+233200000000")

        await reminders.run_payment_reminders(now)

        assert [m["to"] for m in notifier.sms()] == ["+233200000000"]
        assert len(notifier.sms()[0]["body"]) <= 160

    @pytest.mark.asyncio
    async def test_free_class_is_skipped(self, store, reminders, notifier, add_class):
        free = await add_class(type=ClassType.FREE)
        now = utcnow()
        await _unpaid_registration(store, free.id, now - timedelta(days=1))

        counts = await reminders.run_payment_reminders(now)

        assert counts == {"sent": 0, "skipped": 0, "failed": 0}
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_failed_delivery_is_counted_and_retried(self, store, reminders, notifier, bootcamp):
        """Test a failed send is counted and does not block the next pass."""
        now = utcnow()
        await _unpaid_registration(store, bootcamp.id, now - timedelta(days=1))
        notifier.failing = True

        failed = await reminders.run_payment_reminders(now)
        notifier.failing = False
        retried = await reminders.run_payment_reminders(now + timedelta(hours=1))

        assert failed["failed"] == 1
        assert retried["sent"] == 1

    @pytest.mark.asyncio
    async def test_stale_backlog_does_not_hide_due_reminder(self, store, notifications, notifier, bootcamp):
        """Test long-unpaid registrations past the last day mark do not fill the batch."""
        config = SchedulerConfig()
        config.BATCH_SIZE = 3
        reminders = ReminderSweep(store, notifications, config)
        now = utcnow()
        for _ in range(3):
            await _unpaid_registration(store, bootcamp.id, now - timedelta(days=90))
        await _unpaid_registration(store, bootcamp.id, now - timedelta(days=1, hours=1))

        counts = await reminders.run_payment_reminders(now)

        assert counts == {"sent": 1, "skipped": 0, "failed": 0}
        assert len(notifier.emails()) == 1


class TestManualReminders:
    """Tests for operator-triggered payment reminders."""

    @pytest.mark.asyncio
    async def test_manual_send_ignores_day_marks(self, store, reminders, notifier, bootcamp):
        registration = await _unpaid_registration(store, bootcamp.id, utcnow() - timedelta(days=2))

        assert await reminders.send_manual_reminder(registration.id)
        assert len(notifier.emails()) == 1

    @pytest.mark.asyncio
    async def test_manual_send_rejects_paid_and_free(self, store, reminders, bootcamp, add_class):
        paid = await _unpaid_registration(store, bootcamp.id, utcnow())
        await store.registrations.mark_paid([paid.id])
        free = await add_class(type=ClassType.FREE)
        free_registration = await _unpaid_registration(store, free.id, utcnow())

        with pytest.raises(ReminderNotApplicable):
            await reminders.send_manual_reminder(paid.id)
        with pytest.raises(ReminderNotApplicable):
            await reminders.send_manual_reminder(free_registration.id)
        with pytest.raises(RegistrationNotFound):
            await reminders.send_manual_reminder("missing")

    @pytest.mark.asyncio
    async def test_bulk_send_reports_each_registration(self, store, reminders, notifier, bootcamp):
        due = await _unpaid_registration(store, bootcamp.id, utcnow())

        result = await reminders.send_bulk_reminders([due.id, "missing"])

        assert result.sent == [due.id]
        assert result.failed == {"missing": "Registration not found: missing"}

    @pytest.mark.asyncio
    async def test_pending_payments_lists_bootcamp_registrations(self, store, reminders, bootcamp, add_class):
        registration = await _unpaid_registration(store, bootcamp.id, utcnow() - timedelta(days=3, hours=1))
        free = await add_class(type=ClassType.FREE)
        await _unpaid_registration(store, free.id, utcnow())

        items = await reminders.pending_payments()

        assert [item.registration_id for item in items] == [registration.id]
        assert items[0].days_since_registration == 3
        assert items[0].amount_cents == 50000
        assert await reminders.pending_payments(class_id=free.id) == []


class TestCheckoutReminders:

    @pytest.mark.asyncio
    async def test_open_checkout_reminded_once(self, store, reminders, notifier, bootcamp):
        now = utcnow()
        attempt = await store.attempts.create(PaymentAttempt(
            class_id=bootcamp.id,
            parent_name="Akosua Mensah",
            parent_email="parent@example.com",
            students_data=[StudentDescriptor(name="Ama"), StudentDescriptor(name="Kofi")],
            amount_cents=1000,
            payment_url="https://checkout.paystack.com/open",
            created_at=now - timedelta(hours=3),
            expires_at=now + timedelta(hours=21),
        ))

        first = await reminders.run_checkout_reminders(now)
        second = await reminders.run_checkout_reminders(now + timedelta(hours=1))

        assert first["sent"] == 1
        assert second == {"sent": 0, "skipped": 1, "failed": 0}
        email = notifier.emails()[0]
        assert "Ama, Kofi" in email["body"]
        assert "https://checkout.paystack.com/open" in email["body"]
        logs = await store.notification_logs.list_recent()
        assert logs[0].context_key == attempt.id

    @pytest.mark.asyncio
    async def test_fresh_checkout_not_reminded(self, reminders, notifier, bootcamp, checkout):
        await checkout(bootcamp.id)

        counts = await reminders.run_checkout_reminders(utcnow())

        assert counts["sent"] == 0
        assert notifier.sent == []


class TestClassReminders:

    @pytest.mark.asyncio
    async def test_day_before_reminder_sent_once(self, store, reminders, notifier, add_class):
        now = utcnow()
        class_info = await add_class(start_datetime=now + timedelta(hours=5))
        await _unpaid_registration(store, class_info.id, now - timedelta(days=2))

        first = await reminders.run_class_reminders(now)
        repeat = await reminders.run_class_reminders(now + timedelta(minutes=10))

        assert first["sent"] == 1
        assert repeat == {"sent": 0, "skipped": 1, "failed": 0}
        logs = await store.notification_logs.list_recent()
        assert [log.template_key for log in logs] == [TemplateKey.CLASS_REMINDER_24H.value]
        assert "https://meet.example.com/bootcamp" in notifier.emails()[0]["body"]

    @pytest.mark.asyncio
    async def test_hour_before_reminder(self, store, reminders, notifier, add_class):
        """Test a class within the hour gets the 1h reminder, once, even after the 24h one."""
        now = utcnow()
        class_info = await add_class(start_datetime=now + timedelta(minutes=40))
        await _unpaid_registration(store, class_info.id, now - timedelta(days=2))

        first = await reminders.run_class_reminders(now)
        repeat = await reminders.run_class_reminders(now + timedelta(minutes=10))

        assert first["sent"] == 1
        assert repeat["skipped"] == 1
        logs = await store.notification_logs.list_recent()
        assert [log.template_key for log in logs] == [TemplateKey.CLASS_REMINDER_1H.value]
        assert "within the hour" in notifier.emails()[0]["body"]

    @pytest.mark.asyncio
    async def test_class_far_away_is_ignored(self, store, reminders, notifier, bootcamp):
        await _unpaid_registration(store, bootcamp.id, utcnow())

        counts = await reminders.run_class_reminders(utcnow())

        assert counts["sent"] == 0


class TestScheduler:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, attempts, notifications):
        config = SchedulerConfig()
        config.ENABLED = True
        config.EXPIRY_SWEEP_INTERVAL = 3600
        config.PAYMENT_REMINDER_INTERVAL = 3600
        config.CLASS_REMINDER_INTERVAL = 3600
        scheduler = Scheduler(ExpirySweep(attempts), ReminderSweep(store, notifications, config), config)

        await scheduler.start()
        await asyncio.sleep(0)
        assert scheduler.running

        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_disabled(self, store, attempts, notifications):
        config = SchedulerConfig()
        config.ENABLED = False
        scheduler = Scheduler(ExpirySweep(attempts), ReminderSweep(store, notifications, config), config)

        await scheduler.start()

        assert not scheduler.running
