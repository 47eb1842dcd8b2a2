from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from intake.domain.models import NotificationSnapshot, SubmissionSnapshot


SUBMISSION_ID_PATTERN = r"^sub_[0-9A-HJKMNP-TV-Z]{26}$"
NOTIFICATION_ID_PATTERN = r"^ntf_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_concurrency: int
    worker_metrics: WorkerMetrics


class SubmitRowRequest(BaseModel):
    operation: str = Field(default="create", min_length=1, max_length=16)
    data: dict[str, object] = Field(default_factory=dict)
    target_id: str | None = Field(default=None, min_length=1, max_length=64)


class CreateSubmissionRequest(SubmitRowRequest):
    source: Literal["form", "api"] = "api"


class CreateBatchRequest(BaseModel):
    source: Literal["form", "api", "csv"] = "api"
    rows: list[SubmitRowRequest] = Field(min_length=1)
    file_name: str | None = Field(default=None, max_length=255)


class EnqueueResponse(BaseModel):
    item_id: str
    job_id: str
    tube: str
    status: str = "queued"
    submission_ids: list[str]
    skipped_rows: list[str] = Field(default_factory=list)


class SubmissionResponse(BaseModel):
    submission_id: str
    operation: str
    source: str
    status: str
    payload: dict[str, object]
    target_id: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    duplicate_of: str | None = None
    person_id: str | None = None
    csv_row: int | None = None
    batch_id: str | None = None
    file_name: str | None = None
    attempts: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: SubmissionSnapshot) -> SubmissionResponse:
        return cls(
            submission_id=snapshot.submission_id,
            operation=snapshot.operation.value,
            source=snapshot.source.value,
            status=snapshot.status.value,
            payload=dict(snapshot.payload),
            target_id=snapshot.target_id,
            error_message=snapshot.error_message,
            error_code=snapshot.error_code,
            duplicate_of=snapshot.duplicate_of,
            person_id=snapshot.person_id,
            csv_row=snapshot.csv_row,
            batch_id=snapshot.batch_id,
            file_name=snapshot.file_name,
            attempts=snapshot.attempts,
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
            processed_at=snapshot.processed_at,
        )


class SubmissionListResponse(BaseModel):
    items: list[SubmissionResponse]
    limit: int
    offset: int


class DuplicateEmailCount(BaseModel):
    email: str
    count: int


class QueueStatsResponse(BaseModel):
    tube: str
    ready: int
    delayed: int
    reserved: int
    buried: int


class StatisticsResponse(BaseModel):
    by_status: dict[str, int]
    by_operation: dict[str, int]
    by_source: dict[str, int]
    hourly: dict[str, int]
    today: int
    duplicates_today: int
    duplicates_by_source: dict[str, int]
    top_duplicates: list[DuplicateEmailCount]
    queues: list[QueueStatsResponse]


class NotificationResponse(BaseModel):
    notification_id: str
    type: str
    title: str
    message: str
    icon: str
    color: str
    is_important: bool
    is_read: bool
    related_type: str | None = None
    related_id: str | None = None
    data: dict[str, object] = Field(default_factory=dict)
    expires_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: NotificationSnapshot) -> NotificationResponse:
        return cls(
            notification_id=snapshot.notification_id,
            type=snapshot.type,
            title=snapshot.title,
            message=snapshot.message,
            icon=snapshot.icon,
            color=snapshot.color,
            is_important=snapshot.is_important,
            is_read=snapshot.is_read,
            related_type=snapshot.related_type,
            related_id=snapshot.related_id,
            data=dict(snapshot.data),
            expires_at=snapshot.expires_at,
            created_at=snapshot.created_at,
        )


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int


class NotificationActionResponse(BaseModel):
    message: str
    affected: int
    unread_count: int
