"""Core enums used across modules."""

from enum import StrEnum


class RoleEnum(StrEnum):
    """System roles."""

    STUDENT = "student"
    ADMIN = "admin"


class TransactionStatusEnum(StrEnum):
    """Purchase attempt status."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentOutcomeEnum(StrEnum):
    """Payment outcome reported by the gateway."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ReconcileOutcomeEnum(StrEnum):
    """Tag of a reconciliation outcome."""

    APPLIED = "applied"
    CONFLICT = "conflict"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    STORAGE_ERROR = "storage_error"
    RETRY_EXHAUSTED = "retry_exhausted"
