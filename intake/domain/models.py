from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from intake.domain.error_taxonomy import ErrorCode
from intake.domain.errors import UnsupportedOperationError


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: str) -> Operation:
        try:
            return cls(value)
        except ValueError as exc:
            supported = ", ".join(member.value for member in cls)
            raise UnsupportedOperationError(
                f"Unsupported operation '{value}'. Supported operations: {supported}"
            ) from exc


class Source(StrEnum):
    FORM = "form"
    API = "api"
    CSV = "csv"


# Canonical submission lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with intake/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS and OPERATOR_TRANSITIONS).
# - Keep this enum synchronized with the status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class SubmissionStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkItemKind(StrEnum):
    SINGLE = "single"
    BATCH = "batch"


@dataclass(frozen=True)
class SubmissionSnapshot:
    submission_id: str
    operation: Operation
    source: Source
    status: SubmissionStatus
    payload: dict[str, object]
    target_id: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    duplicate_of: str | None = None
    person_id: str | None = None
    csv_row: int | None = None
    batch_id: str | None = None
    file_name: str | None = None
    claimed_by: str | None = None
    attempts: int = 0
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None

    @property
    def email(self) -> str | None:
        value = self.payload.get("email")
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class NewSubmission:
    submission_id: str
    operation: Operation
    source: Source
    payload: dict[str, object]
    status: SubmissionStatus = SubmissionStatus.QUEUED
    target_id: str | None = None
    csv_row: int | None = None
    batch_id: str | None = None
    file_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    error_message: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class SubmissionPatch:
    """Fields a status write may change; None means "leave as is"."""

    status: SubmissionStatus
    payload: dict[str, object] | None = None
    error_message: str | None = None
    error_code: str | None = None
    duplicate_of: str | None = None
    person_id: str | None = None
    claimed_by: str | None = None
    clear_error: bool = False
    mark_processed: bool = False
    count_attempt: bool = False


@dataclass(frozen=True)
class PersonSnapshot:
    person_id: str
    email: str
    data: dict[str, object]
    submission_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class NotificationSnapshot:
    notification_id: str
    type: str
    title: str
    message: str
    icon: str
    color: str
    is_important: bool = False
    is_read: bool = False
    related_type: str | None = None
    related_id: str | None = None
    data: dict[str, object] = field(default_factory=dict)
    expires_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SubmissionRow:
    submission_id: str
    operation: Operation
    source: Source
    data: dict[str, object]
    target_id: str | None = None
    csv_row: int | None = None


@dataclass(frozen=True)
class WorkItem:
    item_id: str
    kind: WorkItemKind
    rows: tuple[SubmissionRow, ...]
    file_name: str | None = None
    total_rows: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_batch(self) -> bool:
        return self.kind == WorkItemKind.BATCH


@dataclass(frozen=True)
class ReservedJob:
    job_id: str
    tube: str
    payload: bytes
    reserves: int
    worker_id: str
    lease_expires_at: datetime | None = None


@dataclass(frozen=True)
class QueueStats:
    tube: str
    ready: int
    delayed: int
    reserved: int
    buried: int


# Per-row results returned by the row handler; the worker loop decides
# between delete, release and bury from these variants alone.
@dataclass(frozen=True)
class RowCompleted:
    submission_id: str
    person_id: str | None = None
    replayed: bool = False


@dataclass(frozen=True)
class RowRejected:
    submission_id: str
    error_code: ErrorCode
    detail: str
    duplicate_of: str | None = None


@dataclass(frozen=True)
class RowRetryable:
    submission_id: str
    error_code: ErrorCode
    detail: str


@dataclass(frozen=True)
class RowSkipped:
    """Row was already terminal when the work item was (re)delivered."""

    submission_id: str
    status: SubmissionStatus
    error_code: str | None = None


RowOutcome = RowCompleted | RowRejected | RowRetryable | RowSkipped


@dataclass(frozen=True)
class SubmissionListQuery:
    statuses: tuple[SubmissionStatus, ...] | None = None
    operation: Operation | None = None
    source: Source | None = None
    email: str | None = None
    batch_id: str | None = None
    has_error: bool | None = None
    limit: int = 100
    offset: int = 0
