"""Classification of ledger storage errors."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
# (statement_timeout), and connection failures.
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014", "08000", "08003", "08006"})


class StorageErrorKind(StrEnum):
    """How a storage error affects reconciliation."""

    CONFLICT = "conflict"
    UNIQUE_VIOLATION = "unique_violation"
    MISSING_REFERENCE = "missing_reference"
    PERMANENT = "permanent"


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        for attr in ("sqlstate", "pgcode"):
            value = getattr(candidate, attr, None)
            if value:
                return str(value)
    return None


def classify_storage_error(exc: BaseException) -> StorageErrorKind:
    """Map a raw storage exception onto the reconciliation taxonomy."""
    if isinstance(exc, (TimeoutError, PoolTimeoutError)):
        return StorageErrorKind.CONFLICT
    if not isinstance(exc, DBAPIError):
        return StorageErrorKind.PERMANENT
    if exc.connection_invalidated:
        return StorageErrorKind.CONFLICT

    state = _sqlstate(exc)
    if state in TRANSIENT_SQLSTATES:
        return StorageErrorKind.CONFLICT
    if state == UNIQUE_VIOLATION:
        return StorageErrorKind.UNIQUE_VIOLATION
    if state == FOREIGN_KEY_VIOLATION:
        return StorageErrorKind.MISSING_REFERENCE

    if isinstance(exc, IntegrityError) and state is None:
        message = str(exc.orig).lower()
        if "foreign key" in message:
            return StorageErrorKind.MISSING_REFERENCE
        if "unique" in message or "duplicate" in message:
            return StorageErrorKind.UNIQUE_VIOLATION
    if isinstance(exc, (OperationalError, InterfaceError)) and state is None:
        return StorageErrorKind.CONFLICT
    return StorageErrorKind.PERMANENT


def is_unique_violation(exc: BaseException) -> bool:
    return classify_storage_error(exc) == StorageErrorKind.UNIQUE_VIOLATION
