"""
Store interfaces
================
Abstract repositories for every entity the engine reads or writes.

The store is the only source of mutual exclusion in the system. Three
guarantees are required of every implementation:

- ``IReconciliationLedger.try_acquire`` is a first-writer-wins insert on the
  provider reference.
- ``IRegistrationRepository.create_within_capacity`` counts and inserts
  atomically per class, all rows or none.
- ``IAttemptRepository.transition`` is a compare-and-set on status.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from classpay.schemas.models import (
    AttemptPage,
    AttemptStatus,
    ClassInfo,
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
    Student,
    StudentDescriptor,
    WebhookLog,
    WebhookLogStatus,
)


# =============================================================================
# COLLABORATORS
# =============================================================================

class IClassCatalog(ABC):
    """Read access to classes (CRUD lives elsewhere)."""

    @abstractmethod
    async def get_class(self, class_id: str) -> Optional[ClassInfo]:
        pass

    @abstractmethod
    async def get_published_class(self, class_id: str) -> ClassInfo:
        """Raises ClassNotFound / ClassNotPublished."""
        pass

    @abstractmethod
    async def count_registrations(self, class_id: str) -> int:
        pass

    @abstractmethod
    async def list_published_starting_between(
        self, start: datetime, end: datetime
    ) -> list[ClassInfo]:
        pass


class IPartyDirectory(ABC):
    """Parents and students, find-or-create so retries are harmless."""

    @abstractmethod
    async def find_or_create_parent(self, email: str, profile: ParentProfile) -> Parent:
        pass

    @abstractmethod
    async def find_or_create_student(self, parent_id: str, descriptor: StudentDescriptor) -> Student:
        pass

    @abstractmethod
    async def get_parent(self, parent_id: str) -> Optional[Parent]:
        pass

    @abstractmethod
    async def get_student(self, student_id: str) -> Optional[Student]:
        pass


# =============================================================================
# ENGINE-OWNED REPOSITORIES
# =============================================================================

class IAttemptRepository(ABC):

    @abstractmethod
    async def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        pass

    @abstractmethod
    async def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[PaymentAttempt]:
        pass

    @abstractmethod
    async def attach_provider_details(
        self,
        attempt_id: str,
        provider_reference: Optional[str] = None,
        payment_url: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        """Set reference/url without touching status. Raises DuplicateReference."""
        pass

    @abstractmethod
    async def transition(
        self,
        attempt_id: str,
        from_statuses: Iterable[AttemptStatus],
        to_status: AttemptStatus,
        *,
        completed_at: Optional[datetime] = None,
        requires_manual_review: Optional[bool] = None,
    ) -> Optional[PaymentAttempt]:
        """Compare-and-set. Returns None when the current status is not in from_statuses."""
        pass

    @abstractmethod
    async def update_notes(self, attempt_id: str, notes: str) -> Optional[PaymentAttempt]:
        pass

    @abstractmethod
    async def search(
        self,
        status: Optional[AttemptStatus] = None,
        class_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> AttemptPage:
        pass

    @abstractmethod
    async def expire_pending(self, now: datetime) -> list[str]:
        """PENDING and expires_at < now → EXPIRED. Returns the expired ids."""
        pass

    @abstractmethod
    async def list_pending_created_between(
        self, start: datetime, end: datetime, limit: int = 500
    ) -> list[PaymentAttempt]:
        pass

    @abstractmethod
    async def latest_pending_for(self, parent_email: str, class_id: str) -> Optional[PaymentAttempt]:
        pass


class IRegistrationRepository(ABC):

    @abstractmethod
    async def create_within_capacity(
        self,
        class_id: str,
        capacity: int,
        registrations: list[Registration],
    ) -> list[Registration]:
        """
        Insert all rows or none. Raises CapacityExceeded when the class
        cannot take them. A row whose (payment_attempt_id, student_id) already
        exists is returned as stored instead of inserted again.
        """
        pass

    @abstractmethod
    async def count_for_class(self, class_id: str) -> int:
        pass

    @abstractmethod
    async def get(self, registration_id: str) -> Optional[Registration]:
        pass

    @abstractmethod
    async def list_for_class(self, class_id: str) -> list[Registration]:
        pass

    @abstractmethod
    async def list_for_attempt(self, attempt_id: str) -> list[Registration]:
        pass

    @abstractmethod
    async def list_unpaid(
        self, created_after: Optional[datetime] = None, limit: int = 500
    ) -> list[Registration]:
        """PENDING-payment registrations, oldest first, created after ``created_after``."""
        pass

    @abstractmethod
    async def mark_paid(self, registration_ids: list[str]) -> int:
        pass


class IPaymentRepository(ABC):

    @abstractmethod
    async def create_many(self, payments: list[Payment]) -> list[Payment]:
        """
        One payment per registration: a registration that already has a
        payment keeps it, and the stored row is returned in its place.
        """
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_for_registrations(self, registration_ids: list[str]) -> list[Payment]:
        pass

    @abstractmethod
    async def update_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        paid_at: Optional[datetime] = None,
        only_if: Optional[PaymentStatus] = None,
    ) -> Optional[Payment]:
        """Returns None when ``only_if`` is given and does not match."""
        pass


class IReconciliationLedger(ABC):
    """Idempotency ledger keyed by provider reference."""

    @abstractmethod
    async def try_acquire(
        self,
        reference: str,
        holder_id: str,
        attempt_id: Optional[str] = None,
        lease_seconds: int = 300,
    ) -> bool:
        """
        Insert a PROCESSING row. False when a row already exists, unless it
        is a PROCESSING claim older than lease_seconds: that one is taken over.
        """
        pass

    @abstractmethod
    async def get(self, reference: str) -> Optional[ReconciliationRecord]:
        pass

    @abstractmethod
    async def mark_completed(
        self,
        reference: str,
        holder_id: str,
        result: ReconciliationResult,
        status: LedgerStatus = LedgerStatus.COMPLETED,
    ) -> bool:
        pass

    @abstractmethod
    async def release(self, reference: str, holder_id: str) -> bool:
        """Drop a PROCESSING row held by holder_id so a retry can claim it."""
        pass


class INotificationLogRepository(ABC):

    @abstractmethod
    async def append(self, entry: NotificationLog) -> NotificationLog:
        pass

    @abstractmethod
    async def exists_recent_success(
        self,
        channel: NotificationChannel,
        to_address: str,
        template_key: str,
        since: datetime,
        context_key: Optional[str] = None,
    ) -> bool:
        pass

    @abstractmethod
    async def list_recent(
        self,
        limit: int = 50,
        channel: Optional[NotificationChannel] = None,
        status: Optional[NotificationStatus] = None,
        template_key: Optional[str] = None,
    ) -> list[NotificationLog]:
        """Newest first, optionally filtered."""
        pass


class IAuditLog(ABC):

    @abstractmethod
    async def record_webhook(self, entry: WebhookLog) -> WebhookLog:
        pass

    @abstractmethod
    async def recent_webhooks(
        self, limit: int = 50, status: Optional[WebhookLogStatus] = None
    ) -> list[WebhookLog]:
        pass


class IManualReviewQueue(ABC):

    @abstractmethod
    async def enqueue(self, item: ManualReviewItem) -> ManualReviewItem:
        pass

    @abstractmethod
    async def list_unresolved(self, limit: int = 100) -> list[ManualReviewItem]:
        pass


# =============================================================================
# BUNDLE
# =============================================================================

@dataclass
class Store:
    """Every repository the engine needs, wired to one backend."""
    classes: IClassCatalog
    parties: IPartyDirectory
    attempts: IAttemptRepository
    registrations: IRegistrationRepository
    payments: IPaymentRepository
    ledger: IReconciliationLedger
    notification_logs: INotificationLogRepository
    audit: IAuditLog
    manual_review: IManualReviewQueue
