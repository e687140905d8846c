"""
In-memory store
===============
asyncio-safe implementations of every store interface. Each repository
guards its own table with an ``asyncio.Lock``, which gives the same
atomicity the PostgreSQL store gets from constraints and transactions.

Used by the test-suite and for local runs (``STORE_BACKEND=memory``).
"""

import asyncio
from datetime import datetime, timedelta
from typing import Iterable, Optional

from classpay.errors import CapacityExceeded, ClassNotFound, ClassNotPublished, DuplicateReference
from classpay.schemas.models import (
    AttemptPage,
    AttemptStatus,
    ClassInfo,
    ClassStatus,
    LedgerStatus,
    ManualReviewItem,
    NotificationChannel,
    NotificationLog,
    NotificationStatus,
    Parent,
    ParentProfile,
    Payment,
    PaymentAttempt,
    PaymentStatus,
    ReconciliationRecord,
    ReconciliationResult,
    Registration,
    RegistrationPaymentStatus,
    Student,
    StudentDescriptor,
    WebhookLog,
    WebhookLogStatus,
    utcnow,
)
from classpay.storage.base import (
    IAttemptRepository,
    IAuditLog,
    IClassCatalog,
    IManualReviewQueue,
    INotificationLogRepository,
    IPartyDirectory,
    IPaymentRepository,
    IReconciliationLedger,
    IRegistrationRepository,
    Store,
)


class InMemoryRegistrationRepository(IRegistrationRepository):
    """Registrations, with the per-class count-and-insert under one lock."""

    def __init__(self):
        self._rows: dict[str, Registration] = {}
        self._lock = asyncio.Lock()

    async def create_within_capacity(
        self,
        class_id: str,
        capacity: int,
        registrations: list[Registration],
    ) -> list[Registration]:
        async with self._lock:
            existing = {
                (r.payment_attempt_id, r.student_id): r
                for r in self._rows.values()
                if r.class_id == class_id and r.payment_attempt_id
            }

            result: list[Registration] = []
            fresh: list[Registration] = []
            for reg in registrations:
                key = (reg.payment_attempt_id, reg.student_id)
                if reg.payment_attempt_id and key in existing:
                    result.append(existing[key])
                else:
                    fresh.append(reg)
                    result.append(reg)

            taken = sum(1 for r in self._rows.values() if r.class_id == class_id)
            if fresh and taken + len(fresh) > capacity:
                raise CapacityExceeded(
                    f"Class {class_id} has {max(capacity - taken, 0)} seat(s) left, "
                    f"{len(fresh)} requested"
                )

            for reg in fresh:
                self._rows[reg.id] = reg
            return [r.model_copy() for r in result]

    async def count_for_class(self, class_id: str) -> int:
        async with self._lock:
            return sum(1 for r in self._rows.values() if r.class_id == class_id)

    async def get(self, registration_id: str) -> Optional[Registration]:
        async with self._lock:
            row = self._rows.get(registration_id)
            return row.model_copy() if row else None

    async def list_for_class(self, class_id: str) -> list[Registration]:
        async with self._lock:
            return [r.model_copy() for r in self._rows.values() if r.class_id == class_id]

    async def list_for_attempt(self, attempt_id: str) -> list[Registration]:
        async with self._lock:
            return [r.model_copy() for r in self._rows.values() if r.payment_attempt_id == attempt_id]

    async def list_unpaid(
        self, created_after: Optional[datetime] = None, limit: int = 500
    ) -> list[Registration]:
        async with self._lock:
            rows = [
                r.model_copy() for r in self._rows.values()
                if r.payment_status == RegistrationPaymentStatus.PENDING
                and (created_after is None or r.created_at >= created_after)
            ]
            return sorted(rows, key=lambda r: r.created_at)[:limit]

    async def mark_paid(self, registration_ids: list[str]) -> int:
        async with self._lock:
            updated = 0
            for reg_id in registration_ids:
                row = self._rows.get(reg_id)
                if row and row.payment_status != RegistrationPaymentStatus.PAID:
                    row.payment_status = RegistrationPaymentStatus.PAID
                    updated += 1
            return updated

    async def insert(self, registration: Registration) -> Registration:
        """Seed helper for tests and local fixtures; no capacity check."""
        async with self._lock:
            self._rows[registration.id] = registration
            return registration.model_copy()


class InMemoryClassCatalog(IClassCatalog):

    def __init__(self, registrations: InMemoryRegistrationRepository):
        self._classes: dict[str, ClassInfo] = {}
        self._registrations = registrations
        self._lock = asyncio.Lock()

    async def add(self, class_info: ClassInfo) -> ClassInfo:
        async with self._lock:
            self._classes[class_info.id] = class_info
            return class_info

    async def get_class(self, class_id: str) -> Optional[ClassInfo]:
        async with self._lock:
            return self._classes.get(class_id)

    async def get_published_class(self, class_id: str) -> ClassInfo:
        class_info = await self.get_class(class_id)
        if class_info is None:
            raise ClassNotFound(f"Class not found: {class_id}")
        if class_info.status != ClassStatus.PUBLISHED:
            raise ClassNotPublished("Class is not available for registration")
        return class_info

    async def count_registrations(self, class_id: str) -> int:
        return await self._registrations.count_for_class(class_id)

    async def list_published_starting_between(self, start: datetime, end: datetime) -> list[ClassInfo]:
        async with self._lock:
            return [
                c for c in self._classes.values()
                if c.status == ClassStatus.PUBLISHED
                and c.start_datetime is not None
                and start <= c.start_datetime <= end
            ]


class InMemoryPartyDirectory(IPartyDirectory):

    def __init__(self):
        self._parents: dict[str, Parent] = {}
        self._students: dict[str, Student] = {}
        self._lock = asyncio.Lock()

    async def find_or_create_parent(self, email: str, profile: ParentProfile) -> Parent:
        email = email.strip().lower()
        async with self._lock:
            for parent in self._parents.values():
                if parent.email == email:
                    return parent
            parent = Parent(name=profile.name, email=email, phone=profile.phone, city=profile.city)
            self._parents[parent.id] = parent
            return parent

    async def find_or_create_student(self, parent_id: str, descriptor: StudentDescriptor) -> Student:
        async with self._lock:
            for student in self._students.values():
                if student.parent_id == parent_id and student.name == descriptor.name:
                    return student
            student = Student(
                parent_id=parent_id,
                name=descriptor.name,
                age=descriptor.age,
                school=descriptor.school,
            )
            self._students[student.id] = student
            return student

    async def get_parent(self, parent_id: str) -> Optional[Parent]:
        async with self._lock:
            return self._parents.get(parent_id)

    async def get_student(self, student_id: str) -> Optional[Student]:
        async with self._lock:
            return self._students.get(student_id)


class InMemoryAttemptRepository(IAttemptRepository):

    def __init__(self):
        self._rows: dict[str, PaymentAttempt] = {}
        self._lock = asyncio.Lock()

    async def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        async with self._lock:
            if attempt.provider_reference and self._find_reference(attempt.provider_reference):
                raise DuplicateReference(attempt.provider_reference)
            self._rows[attempt.id] = attempt.model_copy(deep=True)
            return attempt.model_copy(deep=True)

    def _find_reference(self, reference: str) -> Optional[PaymentAttempt]:
        for row in self._rows.values():
            if row.provider_reference == reference:
                return row
        return None

    async def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        async with self._lock:
            row = self._rows.get(attempt_id)
            return row.model_copy(deep=True) if row else None

    async def get_by_reference(self, reference: str) -> Optional[PaymentAttempt]:
        async with self._lock:
            row = self._find_reference(reference)
            return row.model_copy(deep=True) if row else None

    async def attach_provider_details(
        self,
        attempt_id: str,
        provider_reference: Optional[str] = None,
        payment_url: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        async with self._lock:
            row = self._rows.get(attempt_id)
            if row is None:
                return None
            if provider_reference:
                owner = self._find_reference(provider_reference)
                if owner is not None and owner.id != attempt_id:
                    raise DuplicateReference(provider_reference)
                row.provider_reference = provider_reference
            if payment_url:
                row.payment_url = payment_url
            row.updated_at = utcnow()
            return row.model_copy(deep=True)

    async def transition(
        self,
        attempt_id: str,
        from_statuses: Iterable[AttemptStatus],
        to_status: AttemptStatus,
        *,
        completed_at: Optional[datetime] = None,
        requires_manual_review: Optional[bool] = None,
    ) -> Optional[PaymentAttempt]:
        allowed = set(from_statuses)
        async with self._lock:
            row = self._rows.get(attempt_id)
            if row is None or row.status not in allowed:
                return None
            row.status = to_status
            if completed_at is not None:
                row.completed_at = completed_at
            if requires_manual_review is not None:
                row.requires_manual_review = requires_manual_review
            row.updated_at = utcnow()
            return row.model_copy(deep=True)

    async def update_notes(self, attempt_id: str, notes: str) -> Optional[PaymentAttempt]:
        async with self._lock:
            row = self._rows.get(attempt_id)
            if row is None:
                return None
            row.notes = notes
            row.updated_at = utcnow()
            return row.model_copy(deep=True)

    async def search(
        self,
        status: Optional[AttemptStatus] = None,
        class_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> AttemptPage:
        async with self._lock:
            rows = [
                a for a in self._rows.values()
                if (status is None or a.status == status)
                and (class_id is None or a.class_id == class_id)
                and (date_from is None or a.created_at >= date_from)
                and (date_to is None or a.created_at <= date_to)
            ]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        offset = (page - 1) * limit
        return AttemptPage(
            attempts=[a.model_copy(deep=True) for a in rows[offset:offset + limit]],
            page=page,
            limit=limit,
            total=len(rows),
        )

    async def expire_pending(self, now: datetime) -> list[str]:
        async with self._lock:
            expired = []
            for row in self._rows.values():
                if row.status == AttemptStatus.PENDING and row.expires_at < now:
                    row.status = AttemptStatus.EXPIRED
                    row.updated_at = now
                    expired.append(row.id)
            return expired

    async def list_pending_created_between(
        self, start: datetime, end: datetime, limit: int = 500
    ) -> list[PaymentAttempt]:
        async with self._lock:
            rows = [
                a.model_copy(deep=True) for a in self._rows.values()
                if a.status == AttemptStatus.PENDING and start <= a.created_at <= end
            ]
        return sorted(rows, key=lambda a: a.created_at)[:limit]

    async def latest_pending_for(self, parent_email: str, class_id: str) -> Optional[PaymentAttempt]:
        async with self._lock:
            rows = [
                a for a in self._rows.values()
                if a.status == AttemptStatus.PENDING
                and a.parent_email == parent_email
                and a.class_id == class_id
            ]
        if not rows:
            return None
        return max(rows, key=lambda a: a.created_at).model_copy(deep=True)


class InMemoryPaymentRepository(IPaymentRepository):

    def __init__(self):
        self._rows: dict[str, Payment] = {}
        self._lock = asyncio.Lock()

    async def create_many(self, payments: list[Payment]) -> list[Payment]:
        async with self._lock:
            by_registration = {p.registration_id: p for p in self._rows.values()}
            result = []
            for payment in payments:
                stored = by_registration.get(payment.registration_id)
                if stored is None:
                    stored = payment.model_copy()
                    self._rows[stored.id] = stored
                    by_registration[stored.registration_id] = stored
                result.append(stored.model_copy())
            return result

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        async with self._lock:
            rows = [p for p in self._rows.values() if p.provider_reference == reference]
        if not rows:
            return None
        return min(rows, key=lambda p: p.created_at).model_copy()

    async def list_for_registrations(self, registration_ids: list[str]) -> list[Payment]:
        wanted = set(registration_ids)
        async with self._lock:
            return [p.model_copy() for p in self._rows.values() if p.registration_id in wanted]

    async def update_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
        only_if: Optional[PaymentStatus] = None,
    ) -> Optional[Payment]:
        async with self._lock:
            row = self._rows.get(payment_id)
            if row is None:
                return None
            if only_if is not None and row.status != only_if:
                return None
            row.status = status
            if paid_at is not None:
                row.paid_at = paid_at
            return row.model_copy()


class InMemoryReconciliationLedger(IReconciliationLedger):

    def __init__(self):
        self._records: dict[str, ReconciliationRecord] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(
        self,
        reference: str,
        holder_id: str,
        attempt_id: Optional[str] = None,
        lease_seconds: int = 300,
    ) -> bool:
        async with self._lock:
            existing = self._records.get(reference)
            if existing is not None:
                stale = utcnow() - timedelta(seconds=lease_seconds)
                if existing.status != LedgerStatus.PROCESSING or existing.updated_at >= stale:
                    return False
                existing.holder_id = holder_id
                existing.updated_at = utcnow()
                return True
            self._records[reference] = ReconciliationRecord(
                provider_reference=reference,
                holder_id=holder_id,
                attempt_id=attempt_id,
            )
            return True

    async def get(self, reference: str) -> Optional[ReconciliationRecord]:
        async with self._lock:
            record = self._records.get(reference)
            return record.model_copy(deep=True) if record else None

    async def mark_completed(
        self,
        reference: str,
        holder_id: str,
        result: ReconciliationResult,
        status: LedgerStatus = LedgerStatus.COMPLETED,
    ) -> bool:
        async with self._lock:
            record = self._records.get(reference)
            if record is None or record.holder_id != holder_id:
                return False
            record.status = status
            record.result = result
            record.holder_id = None
            record.updated_at = utcnow()
            return True

    async def release(self, reference: str, holder_id: str) -> bool:
        async with self._lock:
            record = self._records.get(reference)
            if record is None or record.holder_id != holder_id:
                return False
            if record.status != LedgerStatus.PROCESSING:
                return False
            del self._records[reference]
            return True


class InMemoryNotificationLogRepository(INotificationLogRepository):
    """Append-only notification log"""

    def __init__(self):
        self._logs: list[NotificationLog] = []
        self._lock = asyncio.Lock()

    async def append(self, entry: NotificationLog) -> NotificationLog:
        async with self._lock:
            self._logs.append(entry)
            return entry

    async def exists_recent_success(
        self,
        channel: NotificationChannel,
        to_address: str,
        template_key: str,
        since: datetime,
        context_key: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            return any(
                log.type == channel
                and log.to_address == to_address
                and log.template_key == template_key
                and log.status == NotificationStatus.SUCCESS
                and log.sent_at is not None
                and log.sent_at >= since
                and (context_key is None or log.context_key == context_key)
                for log in self._logs
            )

    async def list_recent(
        self,
        limit: int = 50,
        channel: Optional[NotificationChannel] = None,
        status: Optional[NotificationStatus] = None,
        template_key: Optional[str] = None,
    ) -> list[NotificationLog]:
        async with self._lock:
            rows = [
                log for log in reversed(self._logs)
                if (channel is None or log.type == channel)
                and (status is None or log.status == status)
                and (template_key is None or log.template_key == template_key)
            ]
            return rows[:limit]


class InMemoryAuditLog(IAuditLog):
    """Append-only webhook log"""

    def __init__(self):
        self._entries: list[WebhookLog] = []
        self._lock = asyncio.Lock()

    async def record_webhook(self, entry: WebhookLog) -> WebhookLog:
        async with self._lock:
            self._entries.append(entry)
            return entry

    async def recent_webhooks(
        self, limit: int = 50, status: Optional[WebhookLogStatus] = None
    ) -> list[WebhookLog]:
        async with self._lock:
            rows = [e for e in reversed(self._entries) if status is None or e.status == status]
            return rows[:limit]


class InMemoryManualReviewQueue(IManualReviewQueue):

    def __init__(self):
        self._items: dict[str, ManualReviewItem] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, item: ManualReviewItem) -> ManualReviewItem:
        async with self._lock:
            for existing in self._items.values():
                if existing.provider_reference == item.provider_reference:
                    return existing
            self._items[item.id] = item
            return item

    async def list_unresolved(self, limit: int = 100) -> list[ManualReviewItem]:
        async with self._lock:
            return [i for i in self._items.values() if not i.resolved][:limit]


def build_memory_store() -> Store:
    registrations = InMemoryRegistrationRepository()
    return Store(
        classes=InMemoryClassCatalog(registrations),
        parties=InMemoryPartyDirectory(),
        attempts=InMemoryAttemptRepository(),
        registrations=registrations,
        payments=InMemoryPaymentRepository(),
        ledger=InMemoryReconciliationLedger(),
        notification_logs=InMemoryNotificationLogRepository(),
        audit=InMemoryAuditLog(),
        manual_review=InMemoryManualReviewQueue(),
    )
