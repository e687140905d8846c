"""
PostgreSQL store
================
asyncpg implementations of the store interfaces, on top of ``Database``.

Mutual exclusion comes from the schema created in ``Database._run_migrations``:

- ``reconciliation_ledger.provider_reference`` is the primary key, so
  ``try_acquire`` is an ``INSERT ... ON CONFLICT`` that only takes over a
  PROCESSING claim whose lease has run out.
- ``payment_attempts.provider_reference`` is UNIQUE.
- ``registrations(payment_attempt_id, student_id)`` has a unique index, and
  ``create_within_capacity`` counts and inserts inside one transaction
  holding ``pg_advisory_xact_lock`` on the class id.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import asyncpg

from classpay.database import Database
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


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


# =============================================================================
# COLLABORATORS
# =============================================================================

class PostgresClassCatalog(IClassCatalog):

    async def get_class(self, class_id: str) -> Optional[ClassInfo]:
        row = await Database.fetch_one("SELECT * FROM classes WHERE id = $1", class_id)
        return ClassInfo(**dict(row)) if row else None

    async def get_published_class(self, class_id: str) -> ClassInfo:
        class_info = await self.get_class(class_id)
        if class_info is None:
            raise ClassNotFound(f"Class not found: {class_id}")
        if class_info.status != ClassStatus.PUBLISHED:
            raise ClassNotPublished("Class is not available for registration")
        return class_info

    async def count_registrations(self, class_id: str) -> int:
        return await Database.fetch_val(
            "SELECT COUNT(*) FROM registrations WHERE class_id = $1", class_id
        )

    async def list_published_starting_between(self, start: datetime, end: datetime) -> list[ClassInfo]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM classes
            WHERE status = $1 AND start_datetime BETWEEN $2 AND $3
            ORDER BY start_datetime
            """,
            ClassStatus.PUBLISHED.value,
            start,
            end,
        )
        return [ClassInfo(**dict(r)) for r in rows]


class PostgresPartyDirectory(IPartyDirectory):

    async def find_or_create_parent(self, email: str, profile: ParentProfile) -> Parent:
        candidate = Parent(
            name=profile.name,
            email=email.strip().lower(),
            phone=profile.phone,
            city=profile.city,
        )
        # The no-op update makes RETURNING yield the existing row on conflict
        row = await Database.fetch_one(
            """
            INSERT INTO parents (id, name, email, phone, city, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
            RETURNING *
            """,
            candidate.id,
            candidate.name,
            candidate.email,
            candidate.phone,
            candidate.city,
            candidate.created_at,
        )
        return Parent(**dict(row))

    async def find_or_create_student(self, parent_id: str, descriptor: StudentDescriptor) -> Student:
        candidate = Student(
            parent_id=parent_id,
            name=descriptor.name,
            age=descriptor.age,
            school=descriptor.school,
        )
        row = await Database.fetch_one(
            """
            INSERT INTO students (id, parent_id, name, age, school, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (parent_id, name) DO UPDATE SET name = EXCLUDED.name
            RETURNING *
            """,
            candidate.id,
            candidate.parent_id,
            candidate.name,
            candidate.age,
            candidate.school,
            candidate.created_at,
        )
        return Student(**dict(row))

    async def get_parent(self, parent_id: str) -> Optional[Parent]:
        row = await Database.fetch_one("SELECT * FROM parents WHERE id = $1", parent_id)
        return Parent(**dict(row)) if row else None

    async def get_student(self, student_id: str) -> Optional[Student]:
        row = await Database.fetch_one("SELECT * FROM students WHERE id = $1", student_id)
        return Student(**dict(row)) if row else None


# =============================================================================
# PAYMENT ATTEMPTS
# =============================================================================

def _attempt(row: asyncpg.Record) -> PaymentAttempt:
    data = dict(row)
    data["students_data"] = _load(data["students_data"])
    return PaymentAttempt(**data)


class PostgresAttemptRepository(IAttemptRepository):

    async def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        try:
            row = await Database.fetch_one(
                """
                INSERT INTO payment_attempts (
                    id, class_id, parent_name, parent_email, parent_phone, parent_city,
                    students_data, amount_cents, currency, provider, provider_reference,
                    payment_url, status, notes, requires_manual_review, expires_at,
                    completed_at, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11,
                        $12, $13, $14, $15, $16, $17, $18, $19)
                RETURNING *
                """,
                attempt.id,
                attempt.class_id,
                attempt.parent_name,
                attempt.parent_email,
                attempt.parent_phone,
                attempt.parent_city,
                _json([s.model_dump() for s in attempt.students_data]),
                attempt.amount_cents,
                attempt.currency,
                attempt.provider.value,
                attempt.provider_reference,
                attempt.payment_url,
                attempt.status.value,
                attempt.notes,
                attempt.requires_manual_review,
                attempt.expires_at,
                attempt.completed_at,
                attempt.created_at,
                attempt.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateReference(attempt.provider_reference) from e
        return _attempt(row)

    async def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        row = await Database.fetch_one("SELECT * FROM payment_attempts WHERE id = $1", attempt_id)
        return _attempt(row) if row else None

    async def get_by_reference(self, reference: str) -> Optional[PaymentAttempt]:
        row = await Database.fetch_one(
            "SELECT * FROM payment_attempts WHERE provider_reference = $1", reference
        )
        return _attempt(row) if row else None

    async def attach_provider_details(
        self,
        attempt_id: str,
        provider_reference: Optional[str] = None,
        payment_url: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        try:
            row = await Database.fetch_one(
                """
                UPDATE payment_attempts
                SET provider_reference = COALESCE($2, provider_reference),
                    payment_url = COALESCE($3, payment_url),
                    updated_at = $4
                WHERE id = $1
                RETURNING *
                """,
                attempt_id,
                provider_reference,
                payment_url,
                utcnow(),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateReference(provider_reference) from e
        return _attempt(row) if row else None

    async def transition(
        self,
        attempt_id: str,
        from_statuses: Iterable[AttemptStatus],
        to_status: AttemptStatus,
        *,
        completed_at: Optional[datetime] = None,
        requires_manual_review: Optional[bool] = None,
    ) -> Optional[PaymentAttempt]:
        row = await Database.fetch_one(
            """
            UPDATE payment_attempts
            SET status = $3,
                completed_at = COALESCE($4, completed_at),
                requires_manual_review = COALESCE($5, requires_manual_review),
                updated_at = $6
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
            """,
            attempt_id,
            [s.value for s in from_statuses],
            to_status.value,
            completed_at,
            requires_manual_review,
            utcnow(),
        )
        return _attempt(row) if row else None

    async def update_notes(self, attempt_id: str, notes: str) -> Optional[PaymentAttempt]:
        row = await Database.fetch_one(
            """
            UPDATE payment_attempts SET notes = $2, updated_at = $3
            WHERE id = $1
            RETURNING *
            """,
            attempt_id,
            notes,
            utcnow(),
        )
        return _attempt(row) if row else None

    async def search(
        self,
        status: Optional[AttemptStatus] = None,
        class_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> AttemptPage:
        conditions = []
        params: list[Any] = []
        param_num = 1

        if status is not None:
            conditions.append(f"status = ${param_num}")
            params.append(status.value)
            param_num += 1

        if class_id:
            conditions.append(f"class_id = ${param_num}")
            params.append(class_id)
            param_num += 1

        if date_from is not None:
            conditions.append(f"created_at >= ${param_num}")
            params.append(date_from)
            param_num += 1

        if date_to is not None:
            conditions.append(f"created_at <= ${param_num}")
            params.append(date_to)
            param_num += 1

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        total = await Database.fetch_val(
            f"SELECT COUNT(*) FROM payment_attempts {where_clause}", *params
        )
        rows = await Database.fetch_all(
            f"""
            SELECT * FROM payment_attempts
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_num} OFFSET ${param_num + 1}
            """,
            *params,
            limit,
            (page - 1) * limit,
        )
        return AttemptPage(
            attempts=[_attempt(r) for r in rows],
            page=page,
            limit=limit,
            total=total,
        )

    async def expire_pending(self, now: datetime) -> list[str]:
        rows = await Database.fetch_all(
            """
            UPDATE payment_attempts
            SET status = $1, updated_at = $3
            WHERE status = $2 AND expires_at < $3
            RETURNING id
            """,
            AttemptStatus.EXPIRED.value,
            AttemptStatus.PENDING.value,
            now,
        )
        return [r["id"] for r in rows]

    async def list_pending_created_between(
        self, start: datetime, end: datetime, limit: int = 500
    ) -> list[PaymentAttempt]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_attempts
            WHERE status = $1 AND created_at BETWEEN $2 AND $3
            ORDER BY created_at
            LIMIT $4
            """,
            AttemptStatus.PENDING.value,
            start,
            end,
            limit,
        )
        return [_attempt(r) for r in rows]

    async def latest_pending_for(self, parent_email: str, class_id: str) -> Optional[PaymentAttempt]:
        row = await Database.fetch_one(
            """
            SELECT * FROM payment_attempts
            WHERE status = $1 AND parent_email = $2 AND class_id = $3
            ORDER BY created_at DESC
            LIMIT 1
            """,
            AttemptStatus.PENDING.value,
            parent_email,
            class_id,
        )
        return _attempt(row) if row else None


# =============================================================================
# REGISTRATIONS AND PAYMENTS
# =============================================================================

class PostgresRegistrationRepository(IRegistrationRepository):

    async def create_within_capacity(
        self,
        class_id: str,
        capacity: int,
        registrations: list[Registration],
    ) -> list[Registration]:
        async with Database.transaction() as conn:
            await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", class_id)

            attempt_ids = list({r.payment_attempt_id for r in registrations if r.payment_attempt_id})
            existing: dict[tuple, Registration] = {}
            if attempt_ids:
                rows = await conn.fetch(
                    "SELECT * FROM registrations WHERE payment_attempt_id = ANY($1::text[])",
                    attempt_ids,
                )
                for row in rows:
                    reg = Registration(**dict(row))
                    existing[(reg.payment_attempt_id, reg.student_id)] = reg

            result: list[Registration] = []
            fresh: list[Registration] = []
            for reg in registrations:
                key = (reg.payment_attempt_id, reg.student_id)
                if reg.payment_attempt_id and key in existing:
                    result.append(existing[key])
                else:
                    fresh.append(reg)
                    result.append(reg)

            taken = await conn.fetchval(
                "SELECT COUNT(*) FROM registrations WHERE class_id = $1", class_id
            )
            if fresh and taken + len(fresh) > capacity:
                raise CapacityExceeded(
                    f"Class {class_id} has {max(capacity - taken, 0)} seat(s) left, "
                    f"{len(fresh)} requested"
                )

            await conn.executemany(
                """
                INSERT INTO registrations (
                    id, class_id, parent_id, student_id, payment_attempt_id,
                    registration_source, payment_status, attendance_status, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                [
                    (
                        r.id,
                        r.class_id,
                        r.parent_id,
                        r.student_id,
                        r.payment_attempt_id,
                        r.registration_source.value,
                        r.payment_status.value,
                        r.attendance_status.value,
                        r.created_at,
                    )
                    for r in fresh
                ],
            )
        return result

    async def count_for_class(self, class_id: str) -> int:
        return await Database.fetch_val(
            "SELECT COUNT(*) FROM registrations WHERE class_id = $1", class_id
        )

    async def get(self, registration_id: str) -> Optional[Registration]:
        row = await Database.fetch_one("SELECT * FROM registrations WHERE id = $1", registration_id)
        return Registration(**dict(row)) if row else None

    async def list_for_class(self, class_id: str) -> list[Registration]:
        rows = await Database.fetch_all(
            "SELECT * FROM registrations WHERE class_id = $1 ORDER BY created_at", class_id
        )
        return [Registration(**dict(r)) for r in rows]

    async def list_for_attempt(self, attempt_id: str) -> list[Registration]:
        rows = await Database.fetch_all(
            "SELECT * FROM registrations WHERE payment_attempt_id = $1 ORDER BY created_at",
            attempt_id,
        )
        return [Registration(**dict(r)) for r in rows]

    async def list_unpaid(
        self, created_after: Optional[datetime] = None, limit: int = 500
    ) -> list[Registration]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM registrations
            WHERE payment_status = $1
              AND ($2::timestamptz IS NULL OR created_at >= $2)
            ORDER BY created_at
            LIMIT $3
            """,
            RegistrationPaymentStatus.PENDING.value,
            created_after,
            limit,
        )
        return [Registration(**dict(r)) for r in rows]

    async def mark_paid(self, registration_ids: list[str]) -> int:
        if not registration_ids:
            return 0
        status = await Database.execute(
            """
            UPDATE registrations SET payment_status = $1
            WHERE id = ANY($2::text[]) AND payment_status <> $1
            """,
            RegistrationPaymentStatus.PAID.value,
            registration_ids,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(status.split()[-1])


class PostgresPaymentRepository(IPaymentRepository):

    async def create_many(self, payments: list[Payment]) -> list[Payment]:
        async with Database.transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO payments (
                    id, registration_id, amount_cents, currency, provider,
                    provider_reference, status, paid_at, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (registration_id) DO NOTHING
                """,
                [
                    (
                        p.id,
                        p.registration_id,
                        p.amount_cents,
                        p.currency,
                        p.provider.value,
                        p.provider_reference,
                        p.status.value,
                        p.paid_at,
                        p.created_at,
                    )
                    for p in payments
                ],
            )
            rows = await conn.fetch(
                "SELECT * FROM payments WHERE registration_id = ANY($1::text[])",
                [p.registration_id for p in payments],
            )
        stored = {row["registration_id"]: Payment(**dict(row)) for row in rows}
        return [stored[p.registration_id] for p in payments]

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        row = await Database.fetch_one(
            """
            SELECT * FROM payments WHERE provider_reference = $1
            ORDER BY created_at
            LIMIT 1
            """,
            reference,
        )
        return Payment(**dict(row)) if row else None

    async def list_for_registrations(self, registration_ids: list[str]) -> list[Payment]:
        rows = await Database.fetch_all(
            "SELECT * FROM payments WHERE registration_id = ANY($1::text[])",
            registration_ids,
        )
        return [Payment(**dict(r)) for r in rows]

    async def update_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
        only_if: Optional[PaymentStatus] = None,
    ) -> Optional[Payment]:
        row = await Database.fetch_one(
            """
            UPDATE payments
            SET status = $2, paid_at = COALESCE($3, paid_at)
            WHERE id = $1 AND ($4::text IS NULL OR status = $4)
            RETURNING *
            """,
            payment_id,
            status.value,
            paid_at,
            only_if.value if only_if else None,
        )
        return Payment(**dict(row)) if row else None


# =============================================================================
# IDEMPOTENCY LEDGER
# =============================================================================

def _record(row: asyncpg.Record) -> ReconciliationRecord:
    data = dict(row)
    result = _load(data.pop("result"))
    return ReconciliationRecord(
        **data,
        result=ReconciliationResult.model_validate(result) if result else None,
    )


class PostgresReconciliationLedger(IReconciliationLedger):

    async def try_acquire(
        self,
        reference: str,
        holder_id: str,
        attempt_id: Optional[str] = None,
        lease_seconds: int = 300,
    ) -> bool:
        now = utcnow()
        # A PROCESSING claim past its lease belongs to a worker that died mid-run
        row = await Database.fetch_one(
            """
            INSERT INTO reconciliation_ledger (provider_reference, status, holder_id, attempt_id, updated_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (provider_reference) DO UPDATE
            SET holder_id = EXCLUDED.holder_id, updated_at = EXCLUDED.updated_at
            WHERE reconciliation_ledger.status = $2
              AND reconciliation_ledger.updated_at < $6
            RETURNING provider_reference
            """,
            reference,
            LedgerStatus.PROCESSING.value,
            holder_id,
            attempt_id,
            now,
            now - timedelta(seconds=lease_seconds),
        )
        return row is not None

    async def get(self, reference: str) -> Optional[ReconciliationRecord]:
        row = await Database.fetch_one(
            "SELECT * FROM reconciliation_ledger WHERE provider_reference = $1", reference
        )
        return _record(row) if row else None

    async def mark_completed(
        self,
        reference: str,
        holder_id: str,
        result: ReconciliationResult,
        status: LedgerStatus = LedgerStatus.COMPLETED,
    ) -> bool:
        row = await Database.fetch_one(
            """
            UPDATE reconciliation_ledger
            SET status = $3, result = $4::jsonb, holder_id = NULL, updated_at = $5
            WHERE provider_reference = $1 AND holder_id = $2
            RETURNING provider_reference
            """,
            reference,
            holder_id,
            status.value,
            result.model_dump_json(),
            utcnow(),
        )
        return row is not None

    async def release(self, reference: str, holder_id: str) -> bool:
        row = await Database.fetch_one(
            """
            DELETE FROM reconciliation_ledger
            WHERE provider_reference = $1 AND holder_id = $2 AND status = $3
            RETURNING provider_reference
            """,
            reference,
            holder_id,
            LedgerStatus.PROCESSING.value,
        )
        return row is not None


# =============================================================================
# LOGS AND QUEUES
# =============================================================================

def _notification(row: asyncpg.Record) -> NotificationLog:
    data = dict(row)
    data["payload"] = _load(data["payload"]) or {}
    return NotificationLog(**data)


class PostgresNotificationLogRepository(INotificationLogRepository):

    async def append(self, entry: NotificationLog) -> NotificationLog:
        await Database.execute(
            """
            INSERT INTO notification_logs (
                id, type, to_address, template_key, status, context_key,
                sent_at, error_message, payload, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
            """,
            entry.id,
            entry.type.value,
            entry.to_address,
            entry.template_key,
            entry.status.value,
            entry.context_key,
            entry.sent_at,
            entry.error_message,
            _json(entry.payload),
            entry.created_at,
        )
        return entry

    async def exists_recent_success(
        self,
        channel: NotificationChannel,
        to_address: str,
        template_key: str,
        since: datetime,
        context_key: Optional[str] = None,
    ) -> bool:
        found = await Database.fetch_val(
            """
            SELECT EXISTS (
                SELECT 1 FROM notification_logs
                WHERE type = $1 AND to_address = $2 AND template_key = $3
                  AND status = $4 AND sent_at >= $5
                  AND ($6::text IS NULL OR context_key = $6)
            )
            """,
            channel.value,
            to_address,
            template_key,
            NotificationStatus.SUCCESS.value,
            since,
            context_key,
        )
        return bool(found)

    async def list_recent(
        self,
        limit: int = 50,
        channel: Optional[NotificationChannel] = None,
        status: Optional[NotificationStatus] = None,
        template_key: Optional[str] = None,
    ) -> list[NotificationLog]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM notification_logs
            WHERE ($2::text IS NULL OR type = $2)
              AND ($3::text IS NULL OR status = $3)
              AND ($4::text IS NULL OR template_key = $4)
            ORDER BY created_at DESC
            LIMIT $1
            """,
            limit,
            channel.value if channel else None,
            status.value if status else None,
            template_key,
        )
        return [_notification(r) for r in rows]


class PostgresAuditLog(IAuditLog):

    async def record_webhook(self, entry: WebhookLog) -> WebhookLog:
        await Database.execute(
            """
            INSERT INTO webhook_logs (
                id, provider, event, reference, status, error_message,
                payload, processing_ms, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9)
            """,
            entry.id,
            entry.provider.value,
            entry.event,
            entry.reference,
            entry.status.value,
            entry.error_message,
            _json(entry.payload),
            entry.processing_ms,
            entry.created_at,
        )
        return entry

    async def recent_webhooks(
        self, limit: int = 50, status: Optional[WebhookLogStatus] = None
    ) -> list[WebhookLog]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM webhook_logs
            WHERE ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC
            LIMIT $1
            """,
            limit,
            status.value if status else None,
        )
        result = []
        for row in rows:
            data = dict(row)
            data["payload"] = _load(data["payload"])
            result.append(WebhookLog(**data))
        return result


class PostgresManualReviewQueue(IManualReviewQueue):

    async def enqueue(self, item: ManualReviewItem) -> ManualReviewItem:
        row = await Database.fetch_one(
            """
            INSERT INTO manual_review (
                id, attempt_id, provider_reference, class_id, amount_cents,
                currency, parent_email, reason, resolved, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (provider_reference) DO UPDATE SET reason = manual_review.reason
            RETURNING *
            """,
            item.id,
            item.attempt_id,
            item.provider_reference,
            item.class_id,
            item.amount_cents,
            item.currency,
            item.parent_email,
            item.reason,
            item.resolved,
            item.created_at,
        )
        return ManualReviewItem(**dict(row))

    async def list_unresolved(self, limit: int = 100) -> list[ManualReviewItem]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM manual_review WHERE resolved = FALSE
            ORDER BY created_at
            LIMIT $1
            """,
            limit,
        )
        return [ManualReviewItem(**dict(r)) for r in rows]


def build_postgres_store() -> Store:
    return Store(
        classes=PostgresClassCatalog(),
        parties=PostgresPartyDirectory(),
        attempts=PostgresAttemptRepository(),
        registrations=PostgresRegistrationRepository(),
        payments=PostgresPaymentRepository(),
        ledger=PostgresReconciliationLedger(),
        notification_logs=PostgresNotificationLogRepository(),
        audit=PostgresAuditLog(),
        manual_review=PostgresManualReviewQueue(),
    )
