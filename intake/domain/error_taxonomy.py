from __future__ import annotations

from typing import Literal

from intake.domain.errors import (
    DomainDependencyError,
    DomainInvariantError,
    DuplicateRecordError,
    TargetNotFoundError,
    UnsupportedOperationError,
    DomainValidationError,
    WorkItemDecodeError,
)

# Canonical error vocabulary persisted on submission records.
ErrorCode = Literal[
    "validation_error",
    "duplicate_email",
    "target_not_found",
    "unsupported_operation",
    "malformed_work_item",
    "store_unavailable",
    "queue_unavailable",
    "lease_lost",
    "retries_exhausted",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for error_code.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "validation_error",
    "duplicate_email",
    "target_not_found",
    "unsupported_operation",
    "malformed_work_item",
    "store_unavailable",
    "queue_unavailable",
    "lease_lost",
    "retries_exhausted",
    "internal_error",
)

# Errors that can be retried by releasing the work item back to its tube.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "store_unavailable",
        "queue_unavailable",
        "lease_lost",
        "internal_error",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_error_code(code: str) -> ErrorCode:
    if is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if a handler emitted an unknown code.
    return "internal_error"


def error_code_for_exception(exc: BaseException) -> ErrorCode:
    # Order matters: subclasses before their parents.
    if isinstance(exc, DuplicateRecordError):
        return "duplicate_email"
    if isinstance(exc, TargetNotFoundError):
        return "target_not_found"
    if isinstance(exc, UnsupportedOperationError):
        return "unsupported_operation"
    if isinstance(exc, DomainValidationError):
        return "validation_error"
    if isinstance(exc, WorkItemDecodeError):
        return "malformed_work_item"
    if isinstance(exc, DomainInvariantError):
        return "lease_lost"
    if isinstance(exc, (DomainDependencyError, ConnectionError, TimeoutError, OSError)):
        return "store_unavailable"
    return "internal_error"
