"""
Database Module
===============
asyncpg connection pool, startup migrations and the system event log.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Idempotent migrations for every table the payment engine owns
- ``log_event``: the ``system_events`` audit trail

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import asyncpg
import structlog

from classpay.config import settings
from classpay.schemas.models import utcnow

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# EVENT TYPES
# =============================================================================

EventType = Literal[
    # Checkout
    "ATTEMPT_CREATED",
    "ATTEMPT_INITIALIZED",
    "ATTEMPT_CANCELLED",
    "ATTEMPTS_EXPIRED",

    # Reconciliation
    "PAYMENT_CONFIRMED",
    "PAYMENT_FAILED",
    "LEGACY_PAYMENT_CONFIRMED",
    "MANUAL_REVIEW_QUEUED",
    "AMOUNT_MISMATCH",

    # Webhooks
    "WEBHOOK_REJECTED",
    "WEBHOOK_ERROR",

    # System
    "SCHEDULER_STARTED",
    "SCHEDULER_STOPPED",
]

Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: Optional[str] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                dsn or settings.DATABASE_URL,
                min_size=settings.DB_MIN_POOL_SIZE,
                max_size=settings.DB_MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    @asynccontextmanager
    async def transaction(cls):
        """Acquire a connection and open a transaction on it"""
        async with cls.acquire() as conn:
            async with conn.transaction():
                yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        """Execute a query"""
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def fetch_val(cls, query: str, *args) -> Any:
        """Fetch the first column of the first row"""
        async with cls.acquire() as conn:
            return await conn.fetchval(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            # Collaborator tables (CRUD owned elsewhere)
            """
            CREATE TABLE IF NOT EXISTS classes (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                capacity INTEGER NOT NULL CHECK (capacity >= 0),
                status VARCHAR(20) NOT NULL DEFAULT 'DRAFT',
                type VARCHAR(20) NOT NULL DEFAULT 'BOOTCAMP',
                price_cents INTEGER NOT NULL DEFAULT 0,
                start_datetime TIMESTAMPTZ,
                meeting_link TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS parents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                phone TEXT,
                city TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS students (
                id TEXT PRIMARY KEY,
                parent_id TEXT NOT NULL REFERENCES parents(id),
                name TEXT NOT NULL,
                age INTEGER,
                school TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE (parent_id, name)
            )
            """,

            # Checkout intents
            """
            CREATE TABLE IF NOT EXISTS payment_attempts (
                id TEXT PRIMARY KEY,
                class_id TEXT NOT NULL,
                parent_name TEXT NOT NULL,
                parent_email TEXT NOT NULL,
                parent_phone TEXT,
                parent_city TEXT,
                students_data JSONB NOT NULL,
                amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                currency VARCHAR(8) NOT NULL,
                provider VARCHAR(20) NOT NULL,
                provider_reference TEXT UNIQUE,
                payment_url TEXT,
                status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                notes TEXT,
                requires_manual_review BOOLEAN NOT NULL DEFAULT FALSE,
                expires_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS registrations (
                id TEXT PRIMARY KEY,
                class_id TEXT NOT NULL,
                parent_id TEXT NOT NULL,
                student_id TEXT NOT NULL,
                payment_attempt_id TEXT,
                registration_source VARCHAR(20) NOT NULL,
                payment_status VARCHAR(20) NOT NULL,
                attendance_status VARCHAR(20) NOT NULL DEFAULT 'UNKNOWN',
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                registration_id TEXT NOT NULL REFERENCES registrations(id),
                amount_cents INTEGER NOT NULL,
                currency VARCHAR(8) NOT NULL,
                provider VARCHAR(20) NOT NULL,
                provider_reference TEXT,
                status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                paid_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Idempotency ledger
            """
            CREATE TABLE IF NOT EXISTS reconciliation_ledger (
                provider_reference TEXT PRIMARY KEY,
                status VARCHAR(20) NOT NULL DEFAULT 'PROCESSING',
                holder_id TEXT,
                attempt_id TEXT,
                result JSONB,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Logs and queues
            """
            CREATE TABLE IF NOT EXISTS notification_logs (
                id TEXT PRIMARY KEY,
                type VARCHAR(10) NOT NULL,
                to_address TEXT NOT NULL,
                template_key VARCHAR(64) NOT NULL,
                status VARCHAR(10) NOT NULL,
                context_key TEXT,
                sent_at TIMESTAMPTZ,
                error_message TEXT,
                payload JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS webhook_logs (
                id TEXT PRIMARY KEY,
                provider VARCHAR(20) NOT NULL,
                event VARCHAR(64) NOT NULL,
                reference TEXT,
                status VARCHAR(20) NOT NULL,
                error_message TEXT,
                payload JSONB,
                processing_ms DOUBLE PRECISION,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS manual_review (
                id TEXT PRIMARY KEY,
                attempt_id TEXT NOT NULL,
                provider_reference TEXT NOT NULL UNIQUE,
                class_id TEXT NOT NULL,
                amount_cents INTEGER NOT NULL,
                currency VARCHAR(8) NOT NULL,
                parent_email TEXT NOT NULL,
                reason TEXT NOT NULL,
                resolved BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id TEXT PRIMARY KEY,
                correlation_id TEXT,
                timestamp TIMESTAMPTZ DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                component VARCHAR(50),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            # Indexes
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_registrations_attempt_student
            ON registrations(payment_attempt_id, student_id)
            WHERE payment_attempt_id IS NOT NULL
            """,
            "CREATE INDEX IF NOT EXISTS idx_registrations_class ON registrations(class_id)",
            "CREATE INDEX IF NOT EXISTS idx_registrations_payment_status ON registrations(payment_status)",
            "CREATE INDEX IF NOT EXISTS idx_attempts_status_expires ON payment_attempts(status, expires_at)",
            "CREATE INDEX IF NOT EXISTS idx_attempts_email_class ON payment_attempts(parent_email, class_id)",
            "CREATE INDEX IF NOT EXISTS idx_payments_reference ON payments(provider_reference)",
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_registration ON payments(registration_id)",
            """
            CREATE INDEX IF NOT EXISTS idx_notification_dedupe
            ON notification_logs(to_address, template_key, sent_at DESC)
            """,
            "CREATE INDEX IF NOT EXISTS idx_events_type ON system_events(event_type)",
            "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# SYSTEM EVENT LOG
# =============================================================================

async def log_event(
    event_type: EventType,
    payload: Dict[str, Any],
    correlation_id: Optional[str] = None,
    component: Optional[str] = None,
    severity: Severity = "INFO",
) -> str:
    """
    Write one row to ``system_events`` and mirror it to the structured log.

    Never raises: a failed insert is logged and the event id is still
    returned.
    """
    event_id = str(uuid4())

    log_method = getattr(logger, severity.lower(), logger.info)
    log_method(
        event_type,
        event_id=event_id[:8],
        correlation_id=correlation_id,
        source=component,
        **payload,
    )

    if not Database._initialized:
        return event_id

    try:
        await Database.execute(
            """
            INSERT INTO system_events
            (id, correlation_id, timestamp, event_type, component, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            """,
            event_id,
            correlation_id,
            utcnow(),
            event_type,
            component,
            json.dumps(payload, default=str),
            severity,
        )
    except Exception as e:
        logger.error("log_event_failed", error=str(e), event_type=event_type)

    return event_id

