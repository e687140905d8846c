"""
Reconciliation Engine
=====================
Turns a provider-confirmed payment into Parent/Student/Registration/Payment
records exactly once.

    reconcile(reference)
      1. re-verify with the provider (caller-supplied status is never trusted)
      2. attempt found by reference (or by the id embedded in it)
           COMPLETED            -> stored result, ALREADY_COMPLETED
           verification failed  -> VERIFICATION_FAILED, attempt stays PENDING
           verified success     -> claim reference in the ledger, then
                                   capacity re-check, registrations, split
                                   payments, attempt COMPLETED, confirmations
      3. no attempt -> legacy single Payment by reference

Exactly-once comes from the ledger (first writer wins on the reference; a
claim left behind by a crashed worker is taken over once its lease runs out),
the (attempt, student) unique key on registrations, one payment per
registration and the compare-and-set on the attempt status. The engine
holds no locks of its own.
"""

import uuid
from typing import Optional

import structlog

from classpay.config import settings
from classpay.database import log_event
from classpay.errors import CapacityExceeded, PaymentNotFound
from classpay.pipeline.attempts import PaymentAttemptStore
from classpay.pipeline.capacity import CapacityGuard
from classpay.pipeline.notifications import NotificationDispatcher
from classpay.pipeline.provider_gateway import IProviderGateway
from classpay.schemas.models import (
    AttemptStatus,
    LedgerStatus,
    ManualReviewItem,
    Payment,
    PaymentAttempt,
    PaymentProvider,
    PaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    Registration,
    RegistrationPaymentStatus,
    RegistrationSource,
    VerificationStatus,
    VerifiedTransaction,
    utcnow,
)
from classpay.storage.base import Store


def split_amount(total_cents: int, parts: int) -> list[int]:
    """
    Split ``total_cents`` into ``parts`` integer shares that sum to the total.

    Floor division; the remainder goes to the first share
    (1000 / 3 -> [334, 333, 333]).
    """
    if parts <= 0:
        raise ValueError("parts must be positive")
    base, remainder = divmod(total_cents, parts)
    return [base + remainder] + [base] * (parts - 1)


class ReconciliationEngine:
    """
    Example:
        engine = ReconciliationEngine(store, gateway, attempts, notifications)
        result = await engine.reconcile("ATTEMPT-...-1718000000000")
        result.outcome  # COMPLETED, then ALREADY_COMPLETED on every repeat
    """

    def __init__(
        self,
        store: Store,
        gateway: IProviderGateway,
        attempts: PaymentAttemptStore,
        notifications: NotificationDispatcher,
        capacity: Optional[CapacityGuard] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.attempts = attempts
        self.notifications = notifications
        self.capacity = capacity or CapacityGuard(store.classes)
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.RECONCILE_LEASE_SECONDS
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="reconciliation",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def reconcile(self, reference: str) -> ReconciliationResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(reference=reference)
        log.info("reconcile_started")

        verified = await self.gateway.verify_transaction(reference)

        attempt = await self.attempts.find_by_reference(reference)
        if attempt is None:
            return await self._reconcile_legacy(reference, verified, correlation_id, log)

        return await self._reconcile_attempt(attempt, reference, verified, correlation_id, log)

    async def record_failure(self, reference: str) -> ReconciliationResult:
        """
        Bookkeeping for a provider "failed" event. Attempts stay PENDING;
        a PENDING legacy Payment becomes FAILED once the provider confirms it.
        """
        log = self._get_logger().bind(reference=reference)

        attempt = await self.attempts.find_by_reference(reference)
        if attempt is not None:
            log.info("attempt_payment_failed", attempt_id=attempt.id, status=attempt.status.value)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.VERIFICATION_FAILED,
                reference=reference,
                attempt_id=attempt.id,
                class_id=attempt.class_id,
                message="Payment failed; attempt left open for retry",
            )

        payment = await self.store.payments.get_by_reference(reference)
        if payment is None:
            log.warning("failed_event_unknown_reference")
            raise PaymentNotFound(f"No payment for reference {reference}")

        verified = await self.gateway.verify_transaction(reference)
        if verified.status == VerificationStatus.FAILED:
            await self.store.payments.update_status(
                payment.id, PaymentStatus.FAILED, only_if=PaymentStatus.PENDING
            )
        log.info("legacy_payment_failed", payment_id=payment.id, provider_status=verified.provider_status)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.VERIFICATION_FAILED,
            reference=reference,
            message=verified.gateway_response or "Payment failed",
        )

    # =========================================================================
    # ATTEMPT PATH
    # =========================================================================

    async def _reconcile_attempt(
        self,
        attempt: PaymentAttempt,
        reference: str,
        verified: VerifiedTransaction,
        correlation_id: str,
        log,
    ) -> ReconciliationResult:
        log = log.bind(attempt_id=attempt.id, class_id=attempt.class_id)

        record = await self.store.ledger.get(reference)
        if record is not None and record.result is not None:
            log.info("reconcile_replayed", ledger_status=record.status.value)
            return record.result.as_replay()

        if attempt.status == AttemptStatus.COMPLETED:
            log.info("attempt_already_completed")
            return await self._completed_result(attempt, reference)

        if not verified.is_success:
            log.info("verification_failed", provider_status=verified.provider_status)
            await log_event(
                "PAYMENT_FAILED",
                {"reference": reference, "attempt_id": attempt.id, "provider_status": verified.provider_status},
                correlation_id=correlation_id,
                component="reconciliation",
                severity="WARN",
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.VERIFICATION_FAILED,
                reference=reference,
                attempt_id=attempt.id,
                class_id=attempt.class_id,
                message=verified.gateway_response or "Payment was not successful",
            )

        holder_id = str(uuid.uuid4())
        if not await self.store.ledger.try_acquire(
            reference, holder_id, attempt.id, lease_seconds=self.lease_seconds
        ):
            record = await self.store.ledger.get(reference)
            if record is not None and record.result is not None:
                log.info("reconcile_lost_race_replayed")
                return record.result.as_replay()
            log.info("reconcile_in_progress")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IN_PROGRESS,
                reference=reference,
                attempt_id=attempt.id,
                class_id=attempt.class_id,
                message="Payment is being processed",
            )

        try:
            result, ledger_status = await self._apply(attempt.id, reference, verified, correlation_id, log)
        except Exception as e:
            log.error("reconcile_failed", error=str(e), error_type=type(e).__name__)
            await self.store.ledger.release(reference, holder_id)
            raise

        await self.store.ledger.mark_completed(reference, holder_id, result, ledger_status)

        if result.outcome == ReconciliationOutcome.COMPLETED:
            await self._send_confirmations(attempt, result)
        return result

    async def _apply(
        self,
        attempt_id: str,
        reference: str,
        verified: VerifiedTransaction,
        correlation_id: str,
        log,
    ) -> tuple[ReconciliationResult, LedgerStatus]:
        """Runs with the ledger claim held."""
        attempt = await self.attempts.get_attempt(attempt_id)

        if attempt.status == AttemptStatus.COMPLETED:
            return await self._completed_result(attempt, reference), LedgerStatus.COMPLETED
        if attempt.status in (AttemptStatus.EXPIRED, AttemptStatus.CANCELLED):
            return await self._manual_review(
                attempt,
                reference,
                verified,
                ReconciliationOutcome.ATTEMPT_CLOSED_POST_PAYMENT,
                f"Payment received for a {attempt.status.value} attempt",
                correlation_id,
                log,
            ), LedgerStatus.MANUAL_REVIEW

        amount_mismatch = verified.amount_cents < attempt.amount_cents
        if amount_mismatch:
            log.warning(
                "amount_mismatch",
                expected_cents=attempt.amount_cents,
                verified_cents=verified.amount_cents,
            )
            await log_event(
                "AMOUNT_MISMATCH",
                {
                    "reference": reference,
                    "attempt_id": attempt.id,
                    "expected_cents": attempt.amount_cents,
                    "verified_cents": verified.amount_cents,
                },
                correlation_id=correlation_id,
                component="reconciliation",
                severity="WARN",
            )

        class_info = await self.store.classes.get_class(attempt.class_id)
        already = await self.store.registrations.list_for_attempt(attempt.id)
        seats_needed = max(attempt.student_count - len(already), 0)
        if class_info is None or not await self.capacity.can_reserve(class_info.id, seats_needed):
            reason = "Class no longer exists" if class_info is None else "Class filled before payment was confirmed"
            return await self._manual_review(
                attempt,
                reference,
                verified,
                ReconciliationOutcome.CAPACITY_EXCEEDED_POST_PAYMENT,
                reason,
                correlation_id,
                log,
                requires_completion=True,
            ), LedgerStatus.MANUAL_REVIEW

        # Parent -> Students -> Registrations -> Payments, in order
        parent = await self.store.parties.find_or_create_parent(
            attempt.parent_email, attempt.parent_profile
        )
        student_ids: list[str] = []
        for descriptor in attempt.students_data:
            student = await self.store.parties.find_or_create_student(parent.id, descriptor)
            if student.id not in student_ids:
                student_ids.append(student.id)

        pending = [
            Registration(
                class_id=class_info.id,
                parent_id=parent.id,
                student_id=student_id,
                payment_attempt_id=attempt.id,
                registration_source=RegistrationSource.CHECKOUT,
                payment_status=RegistrationPaymentStatus.PAID,
            )
            for student_id in student_ids
        ]
        try:
            registrations = await self.store.registrations.create_within_capacity(
                class_info.id, class_info.capacity, pending
            )
        except CapacityExceeded as e:
            return await self._manual_review(
                attempt,
                reference,
                verified,
                ReconciliationOutcome.CAPACITY_EXCEEDED_POST_PAYMENT,
                e.message,
                correlation_id,
                log,
                requires_completion=True,
            ), LedgerStatus.MANUAL_REVIEW

        await self.store.registrations.mark_paid([r.id for r in registrations])

        paid_at = utcnow()
        shares = split_amount(attempt.amount_cents, len(registrations))
        payments = await self.store.payments.create_many([
            Payment(
                registration_id=registration.id,
                amount_cents=share,
                currency=attempt.currency,
                provider=PaymentProvider.PAYSTACK,
                provider_reference=reference,
                status=PaymentStatus.PAID,
                paid_at=paid_at,
            )
            for registration, share in zip(registrations, shares)
        ])

        completed = await self.attempts.mark_completed(attempt.id)
        completed_at = completed.completed_at if completed else paid_at
        if completed is None:
            log.info("attempt_completed_concurrently")

        await log_event(
            "PAYMENT_CONFIRMED",
            {
                "reference": reference,
                "attempt_id": attempt.id,
                "registrations": len(registrations),
                "amount_cents": attempt.amount_cents,
            },
            correlation_id=correlation_id,
            component="reconciliation",
        )

        return ReconciliationResult(
            outcome=ReconciliationOutcome.COMPLETED,
            reference=reference,
            attempt_id=attempt.id,
            class_id=class_info.id,
            registrations=[
                r.model_copy(update={"payment_status": RegistrationPaymentStatus.PAID})
                for r in registrations
            ],
            payments=payments,
            message="Payment confirmed",
            verified_amount_cents=verified.amount_cents,
            amount_mismatch=amount_mismatch,
            completed_at=completed_at,
        ), LedgerStatus.COMPLETED

    async def _manual_review(
        self,
        attempt: PaymentAttempt,
        reference: str,
        verified: VerifiedTransaction,
        outcome: ReconciliationOutcome,
        reason: str,
        correlation_id: str,
        log,
        requires_completion: bool = False,
    ) -> ReconciliationResult:
        """Money received without a seat: queue for an operator, never drop it."""
        completed_at = None
        if requires_completion:
            completed = await self.attempts.mark_completed(attempt.id, requires_manual_review=True)
            completed_at = completed.completed_at if completed else None

        await self.store.manual_review.enqueue(ManualReviewItem(
            attempt_id=attempt.id,
            provider_reference=reference,
            class_id=attempt.class_id,
            amount_cents=verified.amount_cents or attempt.amount_cents,
            currency=attempt.currency,
            parent_email=attempt.parent_email,
            reason=reason,
        ))

        log.error("manual_review_required", outcome=outcome.value, reason=reason)
        await log_event(
            "MANUAL_REVIEW_QUEUED",
            {"reference": reference, "attempt_id": attempt.id, "outcome": outcome.value, "reason": reason},
            correlation_id=correlation_id,
            component="reconciliation",
            severity="ERROR",
        )

        return ReconciliationResult(
            outcome=outcome,
            reference=reference,
            attempt_id=attempt.id,
            class_id=attempt.class_id,
            message=reason,
            verified_amount_cents=verified.amount_cents,
            completed_at=completed_at,
        )

    async def _completed_result(self, attempt: PaymentAttempt, reference: str) -> ReconciliationResult:
        registrations = await self.store.registrations.list_for_attempt(attempt.id)
        payments = await self.store.payments.list_for_registrations([r.id for r in registrations])
        return ReconciliationResult(
            outcome=ReconciliationOutcome.ALREADY_COMPLETED,
            reference=reference,
            attempt_id=attempt.id,
            class_id=attempt.class_id,
            registrations=registrations,
            payments=payments,
            message="Payment already confirmed",
            completed_at=attempt.completed_at,
        )

    async def _send_confirmations(self, attempt: PaymentAttempt, result: ReconciliationResult) -> None:
        """One confirmation per student. Never raises: the payment is already recorded."""
        log = self._get_logger().bind(attempt_id=attempt.id, reference=result.reference)
        try:
            class_info = await self.store.classes.get_class(attempt.class_id)
        except Exception as e:
            log.error("confirmation_lookup_failed", error=str(e), error_type=type(e).__name__)
            class_info = None
        class_title = class_info.title if class_info else "your class"

        for registration in result.registrations:
            try:
                student = await self.store.parties.get_student(registration.student_id)
                await self.notifications.send_payment_confirmation(
                    email=attempt.parent_email,
                    parent_name=attempt.parent_name,
                    student_name=student.name if student else "your child",
                    class_title=class_title,
                    class_id=attempt.class_id,
                )
            except Exception as e:
                log.error(
                    "confirmation_failed",
                    registration_id=registration.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # =========================================================================
    # LEGACY PATH
    # =========================================================================

    async def _reconcile_legacy(
        self,
        reference: str,
        verified: VerifiedTransaction,
        correlation_id: str,
        log,
    ) -> ReconciliationResult:
        payment = await self.store.payments.get_by_reference(reference)
        if payment is None:
            log.warning("payment_not_found")
            raise PaymentNotFound(f"No payment or payment attempt for reference {reference}")

        log = log.bind(payment_id=payment.id, path="legacy")

        if not verified.is_success:
            await self.store.payments.update_status(
                payment.id, PaymentStatus.FAILED, only_if=PaymentStatus.PENDING
            )
            log.info("legacy_verification_failed", provider_status=verified.provider_status)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.VERIFICATION_FAILED,
                reference=reference,
                payments=[payment],
                message=verified.gateway_response or "Payment was not successful",
            )

        record = await self.store.ledger.get(reference)
        if record is not None and record.result is not None:
            return record.result.as_replay()

        holder_id = str(uuid.uuid4())
        if not await self.store.ledger.try_acquire(reference, holder_id, lease_seconds=self.lease_seconds):
            record = await self.store.ledger.get(reference)
            if record is not None and record.result is not None:
                return record.result.as_replay()
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IN_PROGRESS,
                reference=reference,
                message="Payment is being processed",
            )

        try:
            registration = await self.store.registrations.get(payment.registration_id)
            if payment.status == PaymentStatus.PAID:
                outcome = ReconciliationOutcome.ALREADY_COMPLETED
                updated = payment
            else:
                outcome = ReconciliationOutcome.LEGACY_PAID
                updated = await self.store.payments.update_status(
                    payment.id, PaymentStatus.PAID, paid_at=utcnow()
                ) or payment
                await self.store.registrations.mark_paid([payment.registration_id])
        except Exception as e:
            log.error("legacy_reconcile_failed", error=str(e))
            await self.store.ledger.release(reference, holder_id)
            raise

        if registration is not None:
            registration = registration.model_copy(
                update={"payment_status": RegistrationPaymentStatus.PAID}
            )

        result = ReconciliationResult(
            outcome=outcome,
            reference=reference,
            class_id=registration.class_id if registration else None,
            registrations=[registration] if registration else [],
            payments=[updated],
            message="Payment confirmed",
            verified_amount_cents=verified.amount_cents,
            amount_mismatch=verified.amount_cents < payment.amount_cents,
            completed_at=updated.paid_at,
        )
        await self.store.ledger.mark_completed(reference, holder_id, result)

        if outcome == ReconciliationOutcome.LEGACY_PAID:
            await log_event(
                "LEGACY_PAYMENT_CONFIRMED",
                {"reference": reference, "payment_id": payment.id},
                correlation_id=correlation_id,
                component="reconciliation",
            )
            if registration is not None:
                try:
                    await self._send_legacy_confirmation(registration)
                except Exception as e:
                    log.error("confirmation_failed", error=str(e), error_type=type(e).__name__)
        return result

    async def _send_legacy_confirmation(self, registration: Registration) -> None:
        parent = await self.store.parties.get_parent(registration.parent_id)
        if parent is None:
            return
        student = await self.store.parties.get_student(registration.student_id)
        class_info = await self.store.classes.get_class(registration.class_id)
        await self.notifications.send_payment_confirmation(
            email=parent.email,
            parent_name=parent.name,
            student_name=student.name if student else "your child",
            class_title=class_info.title if class_info else "your class",
            class_id=registration.class_id,
        )
