from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from intake.domain.contracts import NotificationStore
from intake.domain.events import (
    BatchCompleted,
    CsvUploadStarted,
    DomainEvent,
    DuplicateDetected,
    SubmissionProcessed,
)
from intake.domain.ids import new_notification_id
from intake.domain.models import NotificationSnapshot, Operation, SubmissionSnapshot, SubmissionStatus

logger = logging.getLogger("worker")

RELATED_SUBMISSION = "FormSubmission"
RELATED_BATCH = "CsvUpload"


class NotificationType(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    FORM_SUBMISSION = "form_submission"
    CSV_UPLOAD = "csv_upload"
    DUPLICATE_EMAIL = "duplicate_email"


COLORS: dict[NotificationType, str] = {
    NotificationType.SUCCESS: "green",
    NotificationType.ERROR: "red",
    NotificationType.WARNING: "yellow",
    NotificationType.INFO: "blue",
    NotificationType.FORM_SUBMISSION: "purple",
    NotificationType.CSV_UPLOAD: "indigo",
    NotificationType.DUPLICATE_EMAIL: "orange",
}

ICONS: dict[NotificationType, str] = {
    NotificationType.SUCCESS: "fas fa-check-circle",
    NotificationType.ERROR: "fas fa-exclamation-circle",
    NotificationType.WARNING: "fas fa-exclamation-triangle",
    NotificationType.INFO: "fas fa-info-circle",
    NotificationType.FORM_SUBMISSION: "fas fa-file-alt",
    NotificationType.CSV_UPLOAD: "fas fa-file-csv",
    NotificationType.DUPLICATE_EMAIL: "fas fa-copy",
}


def build_notification(
    kind: NotificationType,
    *,
    title: str,
    message: str,
    now: datetime,
    expires_in: timedelta | None,
    icon: str | None = None,
    color: str | None = None,
    is_important: bool = False,
    related_type: str | None = None,
    related_id: str | None = None,
    data: dict[str, object] | None = None,
) -> NotificationSnapshot:
    return NotificationSnapshot(
        notification_id=new_notification_id(),
        type=kind.value,
        title=title,
        message=message,
        icon=icon or ICONS[kind],
        color=color or COLORS[kind],
        is_important=is_important,
        related_type=related_type,
        related_id=related_id,
        data=dict(data or {}),
        expires_at=now + expires_in if expires_in is not None else None,
        created_at=now,
    )


def notification_for_submission(submission: SubmissionSnapshot, *, now: datetime) -> NotificationSnapshot:
    email = submission.email or "Unknown"
    data: dict[str, object] = {
        "submission_id": submission.submission_id,
        "email": email,
        "operation": submission.operation.value,
        "source": submission.source.value,
        "status": submission.status.value,
    }
    common = {"now": now, "related_type": RELATED_SUBMISSION, "related_id": submission.submission_id}

    if submission.status == SubmissionStatus.FAILED:
        error = submission.error_message or "Unknown error"
        return build_notification(
            NotificationType.ERROR,
            title="Form Submission Failed",
            message=f"Submission for {email} failed: {error}",
            expires_in=timedelta(days=30),
            is_important=True,
            data={**data, "error": error},
            **common,
        )

    match submission.operation:
        case Operation.UPDATE:
            changed = len(submission.payload)
            changes = "1 field" if changed == 1 else f"{changed} fields"
            return build_notification(
                NotificationType.INFO,
                title="Form Submission Updated",
                message=f"Submission for {email} updated ({changes} changed)",
                expires_in=timedelta(days=7),
                icon="fas fa-edit",
                color="blue",
                data=data,
                **common,
            )
        case Operation.DELETE:
            return build_notification(
                NotificationType.WARNING,
                title="Form Submission Deleted",
                message=f"{submission.operation.value.capitalize()} submission for {email} has been deleted",
                expires_in=timedelta(days=30),
                icon="fas fa-trash",
                color="red",
                data=data,
                **common,
            )
        case Operation.CREATE:
            return build_notification(
                NotificationType.SUCCESS,
                title="Form Submission Processed",
                message=f"Submission for {email} has been {submission.status.value} successfully",
                expires_in=timedelta(days=3),
                data=data,
                **common,
            )


def notification_for_duplicate(event: DuplicateDetected) -> NotificationSnapshot:
    row = f" (Row {event.csv_row})" if event.csv_row is not None else ""
    return build_notification(
        NotificationType.DUPLICATE_EMAIL,
        title="Duplicate Email Detected",
        message=f"Duplicate email {event.email} found in {event.source.value.capitalize()} submission{row}",
        now=event.occurred_at,
        expires_in=timedelta(days=14),
        related_type=RELATED_SUBMISSION,
        related_id=event.submission_id,
        data={
            "submission_id": event.submission_id,
            "email": event.email,
            "source": event.source.value,
            "duplicate_of": event.duplicate_of,
            "row": event.csv_row,
        },
    )


def notification_for_batch(event: BatchCompleted) -> NotificationSnapshot:
    file_name = event.file_name or "upload"
    message = f"Processed {file_name}: {event.completed} valid"
    if event.invalid > 0:
        message += f", {event.invalid} errors"
    if event.duplicates > 0:
        message += f", {event.duplicates} duplicates"
    kind = NotificationType.WARNING if event.invalid or event.duplicates else NotificationType.SUCCESS
    return build_notification(
        kind,
        title="CSV Upload Completed",
        message=message,
        now=event.occurred_at,
        expires_in=timedelta(days=7),
        related_type=RELATED_BATCH,
        related_id=event.batch_id,
        data={
            "batch_id": event.batch_id,
            "file_name": event.file_name,
            "total_rows": event.total_rows,
            "valid_rows": event.completed,
            "error_rows": event.invalid,
            "duplicate_rows": event.duplicates,
        },
    )


def notification_for_csv_started(event: CsvUploadStarted) -> NotificationSnapshot:
    file_name = event.file_name or "Unknown file"
    return build_notification(
        NotificationType.CSV_UPLOAD,
        title="CSV Upload Started",
        message=f"Processing {file_name} with {event.total_rows} rows",
        now=event.occurred_at,
        expires_in=timedelta(hours=2),
        icon="fas fa-upload",
        related_type=RELATED_BATCH,
        related_id=event.batch_id,
        data={
            "batch_id": event.batch_id,
            "file_name": event.file_name,
            "operation": event.operation.value,
            "total_rows": event.total_rows,
            "skipped_rows": event.skipped_rows,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
        },
    )


@dataclass(frozen=True)
class NotificationGenerator:
    store: NotificationStore
    name: str = "notifications"

    async def handle(self, event: DomainEvent) -> None:
        match event:
            case SubmissionProcessed():
                notification = notification_for_submission(event.submission, now=event.occurred_at)
            case DuplicateDetected():
                notification = notification_for_duplicate(event)
            case BatchCompleted():
                notification = notification_for_batch(event)
            case CsvUploadStarted():
                notification = notification_for_csv_started(event)
            case _:
                return
        await self.store.create(notification=notification)
        logger.info(
            "notification created",
            extra={"notification_type": notification.type, "related_id": notification.related_id},
        )
