# schemas/__init__.py
from classpay.schemas.models import (
    AttemptPage,
    AttemptStatus,
    ClassInfo,
    ClassStatus,
    ClassType,
    CreateAttemptRequest,
    InitializedTransaction,
    ManualReviewItem,
    NotificationLog,
    Parent,
    ParentProfile,
    Payment,
    PaymentAttempt,
    PaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    Registration,
    Student,
    StudentDescriptor,
    VerifiedTransaction,
    WebhookAck,
    WebhookEvent,
    WebhookLog,
    utcnow,
)

__all__ = [
    "AttemptPage",
    "AttemptStatus",
    "ClassInfo",
    "ClassStatus",
    "ClassType",
    "CreateAttemptRequest",
    "InitializedTransaction",
    "ManualReviewItem",
    "NotificationLog",
    "Parent",
    "ParentProfile",
    "Payment",
    "PaymentAttempt",
    "PaymentStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "Registration",
    "Student",
    "StudentDescriptor",
    "VerifiedTransaction",
    "WebhookAck",
    "WebhookEvent",
    "WebhookLog",
    "utcnow",
]
