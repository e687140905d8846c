"""
Error taxonomy for the payment engine.

Provider and store failures are re-classified into these types at each
component boundary. Soft reconciliation conditions (verification failed,
capacity exceeded after payment, already completed) are NOT exceptions;
they are values of ``ReconciliationOutcome``.
"""

from typing import Optional


class ClassPayError(Exception):
    """Base class. ``http_status`` is used once, at the HTTP edge."""

    code = "classpay_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str = None, *, details: Optional[dict] = None):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ConfigurationError(ClassPayError):
    """Payment provider credentials are not configured."""
    code = "configuration_error"
    http_status = 503


class ProviderRejected(ClassPayError):
    """The payment provider rejected the request."""
    code = "provider_rejected"
    http_status = 400

    def __init__(self, message: str = None, *, status_code: int = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class ProviderUnavailable(ClassPayError):
    """The payment provider could not be reached."""
    code = "provider_unavailable"
    http_status = 502
    retryable = True


class AuthenticationError(ClassPayError):
    """Webhook signature missing or invalid."""
    code = "authentication_error"
    http_status = 400


# =============================================================================
# CHECKOUT ERRORS
# =============================================================================

class ClassNotFound(ClassPayError):
    """Class not found."""
    code = "class_not_found"
    http_status = 404


class ClassNotPublished(ClassPayError):
    """Class is not available for registration."""
    code = "class_not_published"
    http_status = 400


class ClassFull(ClassPayError):
    """Class is full."""
    code = "class_full"
    http_status = 409


class AttemptNotFound(ClassPayError):
    """Payment attempt not found."""
    code = "attempt_not_found"
    http_status = 404


class InvalidTransition(ClassPayError):
    """Payment attempt cannot move to the requested status."""
    code = "invalid_transition"
    http_status = 409


class PaymentNotFound(ClassPayError):
    """No payment matches the provider reference."""
    code = "payment_not_found"
    http_status = 404


class RegistrationNotFound(ClassPayError):
    code = "registration_not_found"
    http_status = 404


class ReminderNotApplicable(ClassPayError):
    """Registration is paid already or belongs to a free class."""
    code = "reminder_not_applicable"
    http_status = 400


# =============================================================================
# STORE ERRORS
# =============================================================================

class CapacityExceeded(ClassPayError):
    """Not enough seats left to create the registrations."""
    code = "capacity_exceeded"
    http_status = 409


class DuplicateReference(ClassPayError):
    """Provider reference is already attached to another attempt."""
    code = "duplicate_reference"
    http_status = 409
