import pytest

from intake.domain.error_taxonomy import (
    classify_error,
    error_code_for_exception,
    is_canonical_error_code,
    resolve_error_code,
)
from intake.domain.errors import (
    DomainDependencyError,
    DomainInvariantError,
    DomainValidationError,
    DuplicateRecordError,
    TargetNotFoundError,
    UnsupportedOperationError,
    WorkItemDecodeError,
)


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("duplicate_email") is True
    assert is_canonical_error_code("unknown_error") is False


@pytest.mark.unit
def test_unknown_codes_resolve_to_internal_error() -> None:
    assert resolve_error_code("target_not_found") == "target_not_found"
    assert resolve_error_code("disk_on_fire") == "internal_error"


@pytest.mark.unit
def test_retry_classification_distinguishes_terminal_and_recoverable() -> None:
    assert classify_error("store_unavailable") == "recoverable"
    assert classify_error("lease_lost") == "recoverable"
    assert classify_error("validation_error") == "terminal"
    assert classify_error("duplicate_email") == "terminal"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (DuplicateRecordError("dup", duplicate_of="sub-1"), "duplicate_email"),
        (TargetNotFoundError("gone"), "target_not_found"),
        (UnsupportedOperationError("upsert"), "unsupported_operation"),
        (DomainValidationError("bad"), "validation_error"),
        (WorkItemDecodeError("garbage"), "malformed_work_item"),
        (DomainInvariantError("claim ownership is stale"), "lease_lost"),
        (DomainDependencyError("down"), "store_unavailable"),
        (ConnectionResetError("reset"), "store_unavailable"),
        (RuntimeError("boom"), "internal_error"),
    ],
)
def test_exceptions_map_to_error_codes(exc: Exception, code: str) -> None:
    assert error_code_for_exception(exc) == code
