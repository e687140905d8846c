# schemas/models.py
# ============================================================================
# CLASSPAY — DOMAIN SCHEMAS
# ============================================================================
# Pydantic models for attempts, registrations, payments, notification and
# webhook logs, plus the provider-facing and reconciliation result types.
# ============================================================================

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class ClassStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class ClassType(str, Enum):
    FREE = "FREE"
    BOOTCAMP = "BOOTCAMP"


class PaymentProvider(str, Enum):
    PAYSTACK = "PAYSTACK"
    MANUAL = "MANUAL"


class AttemptStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self != AttemptStatus.PENDING


class RegistrationSource(str, Enum):
    LANDING_PAGE = "LANDING_PAGE"
    CHECKOUT = "CHECKOUT"
    ADMIN = "ADMIN"


class RegistrationPaymentStatus(str, Enum):
    NA = "NA"
    PENDING = "PENDING"
    PAID = "PAID"


class AttendanceStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    ATTENDED = "ATTENDED"
    ABSENT = "ABSENT"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class NotificationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TemplateKey(str, Enum):
    PAYMENT_CONFIRMATION = "bootcamp_payment_success"
    PAYMENT_REMINDER = "payment_reminder"
    CHECKOUT_REMINDER = "checkout_reminder"
    CLASS_REMINDER_24H = "class_reminder_24h"
    CLASS_REMINDER_1H = "class_reminder_1h"


class WebhookLogStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    UNHANDLED = "UNHANDLED"


class VerificationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    OTHER = "other"


class WebhookClassification(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    UNHANDLED = "unhandled"


class LedgerStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class ReconciliationOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    CAPACITY_EXCEEDED_POST_PAYMENT = "CAPACITY_EXCEEDED_POST_PAYMENT"
    ATTEMPT_CLOSED_POST_PAYMENT = "ATTEMPT_CLOSED_POST_PAYMENT"
    IN_PROGRESS = "IN_PROGRESS"
    LEGACY_PAID = "LEGACY_PAID"


# ============================================================================
# SECTION 2: COLLABORATOR RECORDS (owned elsewhere, read here)
# ============================================================================

class ClassInfo(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    capacity: int = Field(ge=0)
    status: ClassStatus = ClassStatus.PUBLISHED
    type: ClassType = ClassType.BOOTCAMP
    price_cents: int = 0
    start_datetime: Optional[datetime] = None
    meeting_link: Optional[str] = None


class ParentProfile(BaseModel):
    """Parent identity captured at checkout."""
    name: str
    email: str
    phone: Optional[str] = None
    city: Optional[str] = None


class Parent(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    email: str
    phone: Optional[str] = None
    city: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StudentDescriptor(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    age: Optional[int] = Field(default=None, ge=0, le=120)
    school: Optional[str] = None


class Student(BaseModel):
    id: str = Field(default_factory=new_id)
    parent_id: str
    name: str
    age: Optional[int] = None
    school: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 3: ENGINE-OWNED ENTITIES
# ============================================================================

class PaymentAttempt(BaseModel):
    """Unconfirmed checkout intent; the audit trail of one transaction."""
    id: str = Field(default_factory=new_id)
    class_id: str
    parent_name: str
    parent_email: str
    parent_phone: Optional[str] = None
    parent_city: Optional[str] = None
    students_data: List[StudentDescriptor] = Field(min_length=1)
    amount_cents: int = Field(gt=0)
    currency: str = "GHS"
    provider: PaymentProvider = PaymentProvider.PAYSTACK
    provider_reference: Optional[str] = None
    payment_url: Optional[str] = None
    status: AttemptStatus = AttemptStatus.PENDING
    notes: Optional[str] = None
    requires_manual_review: bool = False
    expires_at: datetime
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def student_count(self) -> int:
        return len(self.students_data)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())

    @property
    def parent_profile(self) -> ParentProfile:
        return ParentProfile(
            name=self.parent_name,
            email=self.parent_email,
            phone=self.parent_phone,
            city=self.parent_city,
        )


class Registration(BaseModel):
    id: str = Field(default_factory=new_id)
    class_id: str
    parent_id: str
    student_id: str
    payment_attempt_id: Optional[str] = None
    registration_source: RegistrationSource = RegistrationSource.CHECKOUT
    payment_status: RegistrationPaymentStatus = RegistrationPaymentStatus.PENDING
    attendance_status: AttendanceStatus = AttendanceStatus.UNKNOWN
    created_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    registration_id: str
    amount_cents: int = Field(ge=0)
    currency: str = "GHS"
    provider: PaymentProvider = PaymentProvider.PAYSTACK
    provider_reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class NotificationLog(BaseModel):
    """Append-only outbound notification record."""
    id: str = Field(default_factory=new_id)
    type: NotificationChannel = NotificationChannel.EMAIL
    to_address: str
    template_key: str
    status: NotificationStatus
    context_key: Optional[str] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class WebhookLog(BaseModel):
    id: str = Field(default_factory=new_id)
    provider: PaymentProvider = PaymentProvider.PAYSTACK
    event: str = "unknown"
    reference: Optional[str] = None
    status: WebhookLogStatus
    error_message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    processing_ms: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)


class ManualReviewItem(BaseModel):
    """Money received without a seat; resolved by an operator."""
    id: str = Field(default_factory=new_id)
    attempt_id: str
    provider_reference: str
    class_id: str
    amount_cents: int
    currency: str = "GHS"
    parent_email: str
    reason: str
    resolved: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class PendingPayment(BaseModel):
    """Operator view of an unpaid bootcamp registration."""
    registration_id: str
    class_id: str
    class_title: str
    parent_name: str
    parent_email: str
    student_name: str
    amount_cents: int
    days_since_registration: int
    registered_at: datetime


class BulkReminderResult(BaseModel):
    sent: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)


# ============================================================================
# SECTION 4: PROVIDER TYPES
# ============================================================================

class InitializedTransaction(BaseModel):
    authorization_url: str
    reference: str
    access_code: Optional[str] = None


class VerifiedTransaction(BaseModel):
    reference: str
    status: VerificationStatus
    amount_cents: int = 0
    customer_email: Optional[str] = None
    provider_status: Optional[str] = None
    gateway_response: Optional[str] = None

    @computed_field
    @property
    def is_success(self) -> bool:
        return self.status == VerificationStatus.SUCCESS


class WebhookEvent(BaseModel):
    """Authenticated, classified webhook payload."""
    event: str
    classification: WebhookClassification
    reference: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# SECTION 5: RECONCILIATION RESULTS
# ============================================================================

class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    reference: str
    attempt_id: Optional[str] = None
    class_id: Optional[str] = None
    registrations: List[Registration] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    message: Optional[str] = None
    verified_amount_cents: Optional[int] = None
    amount_mismatch: bool = False
    completed_at: Optional[datetime] = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.outcome in (
            ReconciliationOutcome.COMPLETED,
            ReconciliationOutcome.ALREADY_COMPLETED,
            ReconciliationOutcome.LEGACY_PAID,
        )

    @property
    def requires_manual_review(self) -> bool:
        return self.outcome in (
            ReconciliationOutcome.CAPACITY_EXCEEDED_POST_PAYMENT,
            ReconciliationOutcome.ATTEMPT_CLOSED_POST_PAYMENT,
        )

    def as_replay(self) -> "ReconciliationResult":
        """The stored result, as seen by a repeat caller."""
        if self.requires_manual_review:
            return self.model_copy()
        return self.model_copy(update={"outcome": ReconciliationOutcome.ALREADY_COMPLETED})


class ReconciliationRecord(BaseModel):
    """Idempotency ledger row, unique on provider_reference."""
    provider_reference: str
    status: LedgerStatus = LedgerStatus.PROCESSING
    holder_id: Optional[str] = None
    attempt_id: Optional[str] = None
    result: Optional[ReconciliationResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WebhookAck(BaseModel):
    success: bool
    message: str
    event: Optional[str] = None
    reference: Optional[str] = None
    outcome: Optional[ReconciliationOutcome] = None
    processing_ms: Optional[float] = None


class AttemptPage(BaseModel):
    attempts: List[PaymentAttempt]
    page: int
    limit: int
    total: int

    @computed_field
    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


# ============================================================================
# SECTION 6: CHECKOUT INPUT
# ============================================================================

class CreateAttemptRequest(BaseModel):
    class_id: str = Field(min_length=1)
    parent_name: str = Field(min_length=1, max_length=200)
    parent_email: str = Field(min_length=3, max_length=320)
    parent_phone: Optional[str] = None
    parent_city: Optional[str] = None
    students: List[StudentDescriptor] = Field(min_length=1)
    amount_cents: int = Field(gt=0)
    currency: Optional[str] = None

    @field_validator("parent_email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("parent_email must be an email address")
        return v
