from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DuplicateRecordError(DomainValidationError):
    def __init__(self, message: str, *, duplicate_of: str) -> None:
        super().__init__(message)
        self.duplicate_of = duplicate_of


class TargetNotFoundError(DomainValidationError):
    pass


class UnsupportedOperationError(DomainValidationError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    """Record store, queue or cache could not be reached."""


class WorkItemDecodeError(DomainError):
    pass
