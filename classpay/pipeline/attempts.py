"""
Payment Attempt Store
=====================
Owns ``PaymentAttempt`` and its state machine:

    PENDING -> COMPLETED   (reconciliation only, after verified success)
    PENDING -> CANCELLED   (operator)
    PENDING -> EXPIRED     (scheduler, once expires_at has passed)

Terminal states are final. Every transition is a compare-and-set in the
store, so concurrent callers cannot both win.
"""

import re
import time
from datetime import datetime, timedelta
from typing import Optional

import structlog

from classpay.config import settings
from classpay.database import log_event
from classpay.errors import AttemptNotFound, InvalidTransition
from classpay.pipeline.capacity import CapacityGuard
from classpay.pipeline.provider_gateway import IProviderGateway
from classpay.schemas.models import (
    AttemptPage,
    AttemptStatus,
    CreateAttemptRequest,
    InitializedTransaction,
    PaymentAttempt,
    utcnow,
)
from classpay.storage.base import Store

logger = structlog.get_logger().bind(component="attempt_store")

REFERENCE_PREFIX = "ATTEMPT"
_REFERENCE_RE = re.compile(
    r"^ATTEMPT-(?P<attempt_id>[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})-(?P<ms>\d+)$"
)


def build_reference(attempt_id: str, now: Optional[datetime] = None) -> str:
    """``ATTEMPT-{attempt_id}-{epoch_ms}``"""
    epoch_ms = int((now.timestamp() if now else time.time()) * 1000)
    return f"{REFERENCE_PREFIX}-{attempt_id}-{epoch_ms}"


def parse_reference(reference: str) -> Optional[str]:
    """Attempt id embedded in a reference built by ``build_reference``, else None."""
    match = _REFERENCE_RE.match(reference or "")
    return match.group("attempt_id") if match else None


class PaymentAttemptStore:

    def __init__(
        self,
        store: Store,
        gateway: IProviderGateway,
        capacity: Optional[CapacityGuard] = None,
        ttl_hours: Optional[int] = None,
        callback_url: Optional[str] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.capacity = capacity or CapacityGuard(store.classes)
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.ATTEMPT_TTL_HOURS)
        self.callback_url = callback_url or settings.payment_callback_url

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_attempt(self, request: CreateAttemptRequest) -> PaymentAttempt:
        """
        Start a checkout. Raises ClassNotFound, ClassNotPublished or ClassFull.

        The capacity check is optimistic; no seat is held.
        """
        class_info = await self.store.classes.get_published_class(request.class_id)
        await self.capacity.ensure_seats(class_info.id, len(request.students))

        now = utcnow()
        attempt = PaymentAttempt(
            class_id=class_info.id,
            parent_name=request.parent_name,
            parent_email=request.parent_email,
            parent_phone=request.parent_phone,
            parent_city=request.parent_city,
            students_data=request.students,
            amount_cents=request.amount_cents,
            currency=request.currency or settings.DEFAULT_CURRENCY,
            expires_at=now + self.ttl,
            created_at=now,
            updated_at=now,
        )
        attempt = await self.store.attempts.create(attempt)

        await log_event(
            "ATTEMPT_CREATED",
            {
                "attempt_id": attempt.id,
                "class_id": attempt.class_id,
                "students": attempt.student_count,
                "amount_cents": attempt.amount_cents,
            },
            correlation_id=attempt.id,
            component="attempt_store",
        )
        return attempt

    async def initialize_payment(self, attempt_id: str) -> InitializedTransaction:
        """Open a provider session for a PENDING attempt and store its reference/url."""
        attempt = await self.get_attempt(attempt_id)

        if attempt.status != AttemptStatus.PENDING:
            raise InvalidTransition(
                f"Cannot initialize payment for a {attempt.status.value} attempt"
            )
        if attempt.is_expired():
            await self.store.attempts.transition(
                attempt.id, [AttemptStatus.PENDING], AttemptStatus.EXPIRED
            )
            raise InvalidTransition("Payment attempt has expired")

        reference = build_reference(attempt.id)
        transaction = await self.gateway.initialize_transaction(
            email=attempt.parent_email,
            amount_cents=attempt.amount_cents,
            reference=reference,
            callback_url=self.callback_url,
            metadata={"paymentAttemptId": attempt.id, "classId": attempt.class_id},
        )

        await self.update_status(
            attempt.id,
            provider_reference=transaction.reference,
            payment_url=transaction.authorization_url,
        )

        await log_event(
            "ATTEMPT_INITIALIZED",
            {"attempt_id": attempt.id, "reference": transaction.reference},
            correlation_id=attempt.id,
            component="attempt_store",
        )
        return transaction

    async def update_status(
        self,
        attempt_id: str,
        provider_reference: Optional[str] = None,
        payment_url: Optional[str] = None,
    ) -> PaymentAttempt:
        """Attach provider details without changing the attempt's status."""
        attempt = await self.store.attempts.attach_provider_details(
            attempt_id, provider_reference=provider_reference, payment_url=payment_url
        )
        if attempt is None:
            raise AttemptNotFound(f"Payment attempt not found: {attempt_id}")
        return attempt

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def mark_completed(
        self, attempt_id: str, requires_manual_review: bool = False
    ) -> Optional[PaymentAttempt]:
        """PENDING -> COMPLETED. Returns None when the attempt was not PENDING."""
        return await self.store.attempts.transition(
            attempt_id,
            [AttemptStatus.PENDING],
            AttemptStatus.COMPLETED,
            completed_at=utcnow(),
            requires_manual_review=requires_manual_review,
        )

    async def cancel(self, attempt_id: str) -> PaymentAttempt:
        attempt = await self.get_attempt(attempt_id)
        if attempt.status == AttemptStatus.CANCELLED:
            return attempt

        cancelled = await self.store.attempts.transition(
            attempt_id, [AttemptStatus.PENDING], AttemptStatus.CANCELLED
        )
        if cancelled is None:
            # Lost a race or the attempt was already terminal
            current = await self.get_attempt(attempt_id)
            if current.status == AttemptStatus.CANCELLED:
                return current
            raise InvalidTransition(
                f"Cannot cancel a {current.status.value} payment attempt"
            )

        await log_event(
            "ATTEMPT_CANCELLED",
            {"attempt_id": attempt_id},
            correlation_id=attempt_id,
            component="attempt_store",
        )
        return cancelled

    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        """PENDING attempts past expires_at -> EXPIRED. Returns the expired ids."""
        expired = await self.store.attempts.expire_pending(now or utcnow())
        if expired:
            await log_event(
                "ATTEMPTS_EXPIRED",
                {"count": len(expired)},
                component="attempt_store",
            )
        return expired

    # =========================================================================
    # OPERATOR READS / NOTES
    # =========================================================================

    async def get_attempt(self, attempt_id: str) -> PaymentAttempt:
        attempt = await self.store.attempts.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(f"Payment attempt not found: {attempt_id}")
        return attempt

    async def find_by_reference(self, reference: str) -> Optional[PaymentAttempt]:
        """
        Attempt owning ``reference``. Falls back to the id embedded in the
        reference; the reference is attached only while the attempt is PENDING.
        """
        attempt = await self.store.attempts.get_by_reference(reference)
        if attempt is not None:
            return attempt

        attempt_id = parse_reference(reference)
        if attempt_id is None:
            return None

        attempt = await self.store.attempts.get(attempt_id)
        if attempt is None:
            return None
        if attempt.status == AttemptStatus.PENDING and attempt.provider_reference != reference:
            logger.info(
                "attempt_reference_reattached",
                attempt_id=attempt_id,
                previous=attempt.provider_reference,
                reference=reference,
            )
            attempt = await self.update_status(attempt_id, provider_reference=reference)
        return attempt

    async def list_attempts(
        self,
        status: Optional[AttemptStatus] = None,
        class_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> AttemptPage:
        return await self.store.attempts.search(
            status=status,
            class_id=class_id,
            date_from=date_from,
            date_to=date_to,
            page=max(page, 1),
            limit=min(max(limit, 1), 100),
        )

    async def update_notes(self, attempt_id: str, notes: str) -> PaymentAttempt:
        attempt = await self.store.attempts.update_notes(attempt_id, notes)
        if attempt is None:
            raise AttemptNotFound(f"Payment attempt not found: {attempt_id}")
        return attempt
