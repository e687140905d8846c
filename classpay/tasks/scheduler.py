"""
Scheduler - Expiry and Reminder Sweeps
======================================
Fixed-interval background loops:

- expiry sweep: PENDING attempts past expires_at -> EXPIRED
- payment reminders: unpaid bootcamp registrations on day marks 1, 3, 7, 14, 30
- checkout reminders: PENDING attempts with an open payment link, once
- class reminders: 24h and 1h before a published class starts

Sweeps only transition attempts and append notification logs; they never
create registrations. They are idempotent through the NotificationLog
dedupe window, so a missed or doubled cycle is harmless. A failing item
never aborts its sweep, and a failing sweep never kills its loop.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog

from classpay.config import SchedulerConfig, scheduler_config, settings
from classpay.database import log_event
from classpay.errors import ClassPayError, RegistrationNotFound, ReminderNotApplicable
from classpay.pipeline.attempts import PaymentAttemptStore
from classpay.pipeline.notifications import NotificationDispatcher
from classpay.schemas.models import (
    BulkReminderResult,
    ClassInfo,
    ClassType,
    Parent,
    PendingPayment,
    RegistrationPaymentStatus,
    Student,
    TemplateKey,
    utcnow,
)
from classpay.storage.base import Store

logger = structlog.get_logger().bind(component="scheduler")


def matching_day_offset(
    created_at: datetime,
    now: datetime,
    offsets: list[int],
    window: timedelta,
) -> Optional[int]:
    """
    The day offset ``created_at`` has just reached, if any.

    A registration matches day N when exactly N whole days have elapsed and
    ``now`` is within ``window`` of the N-day mark.
    """
    elapsed = now - created_at
    if elapsed < timedelta(0):
        return None
    days = elapsed.days
    if days not in offsets:
        return None
    if abs(now - (created_at + timedelta(days=days))) <= window:
        return days
    return None


# =============================================================================
# SWEEPS
# =============================================================================

class ExpirySweep:

    def __init__(self, attempts: PaymentAttemptStore):
        self.attempts = attempts

    async def run(self, now: Optional[datetime] = None) -> int:
        expired = await self.attempts.expire_stale(now or utcnow())
        logger.info("expiry_sweep_complete", expired=len(expired))
        return len(expired)


class ReminderSweep:

    def __init__(
        self,
        store: Store,
        notifications: NotificationDispatcher,
        config: Optional[SchedulerConfig] = None,
    ):
        self.store = store
        self.notifications = notifications
        self.config = config or scheduler_config

    async def run_payment_reminders(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        counts = {"sent": 0, "skipped": 0, "failed": 0}
        window = timedelta(hours=self.config.REMINDER_MATCH_WINDOW_HOURS)
        dedupe = timedelta(hours=self.config.PAYMENT_REMINDER_DEDUPE_HOURS)

        # Past the last offset no reminder can match; older rows would crowd the batch
        horizon = now - timedelta(days=max(self.config.REMINDER_DAY_OFFSETS, default=0) + 1) - window
        registrations = await self.store.registrations.list_unpaid(
            created_after=horizon, limit=self.config.BATCH_SIZE
        )
        for registration in registrations:
            try:
                day = matching_day_offset(
                    registration.created_at, now, self.config.REMINDER_DAY_OFFSETS, window
                )
                if day is None:
                    continue

                class_info = await self.store.classes.get_class(registration.class_id)
                if class_info is None or class_info.type != ClassType.BOOTCAMP:
                    continue
                parent = await self.store.parties.get_parent(registration.parent_id)
                student = await self.store.parties.get_student(registration.student_id)
                if parent is None or student is None:
                    continue

                if await self.notifications.already_sent(
                    parent.email, TemplateKey.PAYMENT_REMINDER, dedupe, context_key=class_info.id, now=now
                ):
                    counts["skipped"] += 1
                    continue

                sent = await self._deliver_payment_reminder(class_info, parent, student)
                counts["sent" if sent else "failed"] += 1
                logger.info(
                    "payment_reminder_processed",
                    registration_id=registration.id,
                    reminder_day=day,
                    sent=sent,
                )
            except Exception as e:
                counts["failed"] += 1
                logger.error("payment_reminder_error", registration_id=registration.id, error=str(e))

        logger.info("payment_reminder_sweep_complete", **counts)
        return counts

    async def _deliver_payment_reminder(self, class_info: ClassInfo, parent: Parent, student: Student) -> bool:
        """Links the parent's latest open checkout for the class, else the registration page."""
        attempt = await self.store.attempts.latest_pending_for(parent.email, class_info.id)
        payment_url = (
            attempt.payment_url
            if attempt and attempt.payment_url
            else settings.registration_url(class_info.id)
        )
        return await self.notifications.send_payment_reminder(
            email=parent.email,
            parent_name=parent.name,
            student_name=student.name,
            class_title=class_info.title,
            amount_cents=class_info.price_cents,
            payment_url=payment_url,
            currency=settings.DEFAULT_CURRENCY,
            class_id=class_info.id,
            phone=parent.phone,
        )

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    async def pending_payments(self, class_id: Optional[str] = None, limit: int = 100) -> list[PendingPayment]:
        """Unpaid bootcamp registrations, most overdue first."""
        now = utcnow()
        items: list[PendingPayment] = []
        for registration in await self.store.registrations.list_unpaid(limit=self.config.BATCH_SIZE):
            if class_id and registration.class_id != class_id:
                continue
            class_info = await self.store.classes.get_class(registration.class_id)
            if class_info is None or class_info.type != ClassType.BOOTCAMP:
                continue
            parent = await self.store.parties.get_parent(registration.parent_id)
            student = await self.store.parties.get_student(registration.student_id)
            if parent is None or student is None:
                continue
            items.append(PendingPayment(
                registration_id=registration.id,
                class_id=class_info.id,
                class_title=class_info.title,
                parent_name=parent.name,
                parent_email=parent.email,
                student_name=student.name,
                amount_cents=class_info.price_cents,
                days_since_registration=max((now - registration.created_at).days, 0),
                registered_at=registration.created_at,
            ))
            if len(items) >= limit:
                break
        return items

    async def send_manual_reminder(self, registration_id: str) -> bool:
        """
        Operator-triggered payment reminder. Bypasses the day marks and the
        dedupe window; the send is still logged, so the next sweep skips it.
        """
        registration = await self.store.registrations.get(registration_id)
        if registration is None:
            raise RegistrationNotFound(f"Registration not found: {registration_id}")
        if registration.payment_status != RegistrationPaymentStatus.PENDING:
            raise ReminderNotApplicable("Registration is not pending payment")

        class_info = await self.store.classes.get_class(registration.class_id)
        if class_info is None or class_info.type != ClassType.BOOTCAMP:
            raise ReminderNotApplicable("Only bootcamp registrations require payment")
        parent = await self.store.parties.get_parent(registration.parent_id)
        student = await self.store.parties.get_student(registration.student_id)
        if parent is None or student is None:
            raise ReminderNotApplicable("Registration has no parent contact")

        sent = await self._deliver_payment_reminder(class_info, parent, student)
        logger.info("manual_payment_reminder", registration_id=registration_id, sent=sent)
        return sent

    async def send_bulk_reminders(self, registration_ids: list[str]) -> BulkReminderResult:
        result = BulkReminderResult()
        for registration_id in registration_ids:
            try:
                if await self.send_manual_reminder(registration_id):
                    result.sent.append(registration_id)
                else:
                    result.failed[registration_id] = "Delivery failed"
            except ClassPayError as e:
                result.failed[registration_id] = e.message
        logger.info("bulk_payment_reminders", sent=len(result.sent), failed=len(result.failed))
        return result

    async def run_checkout_reminders(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        counts = {"sent": 0, "skipped": 0, "failed": 0}
        ttl = timedelta(hours=settings.ATTEMPT_TTL_HOURS)

        attempts = await self.store.attempts.list_pending_created_between(
            now - ttl,
            now - timedelta(hours=self.config.CHECKOUT_REMINDER_HOURS),
            limit=self.config.BATCH_SIZE,
        )
        for attempt in attempts:
            try:
                if not attempt.payment_url or attempt.is_expired(now):
                    continue
                if await self.notifications.already_sent(
                    attempt.parent_email, TemplateKey.CHECKOUT_REMINDER, ttl, context_key=attempt.id, now=now
                ):
                    counts["skipped"] += 1
                    continue

                class_info = await self.store.classes.get_class(attempt.class_id)
                sent = await self.notifications.send_checkout_reminder(
                    email=attempt.parent_email,
                    parent_name=attempt.parent_name,
                    student_names=[s.name for s in attempt.students_data],
                    class_title=class_info.title if class_info else "your class",
                    payment_url=attempt.payment_url,
                    attempt_id=attempt.id,
                )
                counts["sent" if sent else "failed"] += 1
            except Exception as e:
                counts["failed"] += 1
                logger.error("checkout_reminder_error", attempt_id=attempt.id, error=str(e))

        logger.info("checkout_reminder_sweep_complete", **counts)
        return counts

    async def run_class_reminders(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        counts = {"sent": 0, "skipped": 0, "failed": 0}
        early = timedelta(hours=self.config.CLASS_REMINDER_EARLY_HOURS)
        late = timedelta(hours=self.config.CLASS_REMINDER_LATE_HOURS)

        classes = await self.store.classes.list_published_starting_between(now, now + early)
        for class_info in classes:
            until_start = class_info.start_datetime - now
            if until_start <= late:
                template_key, dedupe = TemplateKey.CLASS_REMINDER_1H, late
            else:
                template_key, dedupe = TemplateKey.CLASS_REMINDER_24H, early

            for registration in await self.store.registrations.list_for_class(class_info.id):
                try:
                    parent = await self.store.parties.get_parent(registration.parent_id)
                    student = await self.store.parties.get_student(registration.student_id)
                    if parent is None or student is None:
                        continue

                    if await self.notifications.already_sent(
                        parent.email, template_key, dedupe, context_key=class_info.id, now=now
                    ):
                        counts["skipped"] += 1
                        continue

                    sent = await self.notifications.send_class_reminder(
                        email=parent.email,
                        parent_name=parent.name,
                        student_name=student.name,
                        class_info=class_info,
                        template_key=template_key,
                    )
                    counts["sent" if sent else "failed"] += 1
                except Exception as e:
                    counts["failed"] += 1
                    logger.error("class_reminder_error", registration_id=registration.id, error=str(e))

        logger.info("class_reminder_sweep_complete", **counts)
        return counts


# =============================================================================
# LOOPS
# =============================================================================

class Scheduler:
    """Owns the background tasks; started and stopped by the API lifespan."""

    def __init__(
        self,
        expiry: ExpirySweep,
        reminders: ReminderSweep,
        config: Optional[SchedulerConfig] = None,
    ):
        self.expiry = expiry
        self.reminders = reminders
        self.config = config or scheduler_config
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _loop(self, name: str, interval: int, sweep: Callable[[], Awaitable]):
        logger.info("sweep_loop_started", sweep=name, interval=interval)
        while True:
            try:
                await sweep()
            except Exception as e:
                logger.error("sweep_loop_error", sweep=name, error=str(e))

            await asyncio.sleep(interval)

    async def _payment_reminders(self):
        await self.reminders.run_payment_reminders()
        await self.reminders.run_checkout_reminders()

    async def start(self) -> None:
        if not self.config.ENABLED:
            logger.info("scheduler_disabled")
            return
        if self.running:
            return

        self._tasks = [
            asyncio.create_task(
                self._loop("expiry", self.config.EXPIRY_SWEEP_INTERVAL, self.expiry.run)
            ),
            asyncio.create_task(
                self._loop("payment_reminders", self.config.PAYMENT_REMINDER_INTERVAL, self._payment_reminders)
            ),
            asyncio.create_task(
                self._loop("class_reminders", self.config.CLASS_REMINDER_INTERVAL, self.reminders.run_class_reminders)
            ),
        ]
        await log_event("SCHEDULER_STARTED", {"loops": len(self._tasks)}, component="scheduler")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            await log_event("SCHEDULER_STOPPED", {"loops": len(tasks)}, component="scheduler")
