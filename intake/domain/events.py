from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from intake.domain.models import Operation, Source, SubmissionSnapshot, SubmissionStatus

logger = logging.getLogger("worker")


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SubmissionProcessed:
    """A submission reached completed or failed."""

    submission: SubmissionSnapshot
    occurred_at: datetime = field(default_factory=_now)

    @property
    def status(self) -> SubmissionStatus:
        return self.submission.status


@dataclass(frozen=True)
class DuplicateDetected:
    submission_id: str
    email: str
    source: Source
    duplicate_of: str
    csv_row: int | None = None
    batch_id: str | None = None
    file_name: str | None = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class BatchCompleted:
    batch_id: str
    file_name: str | None
    total_rows: int
    completed: int
    invalid: int
    duplicates: int
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SubmissionRequeued:
    """Operator moved a failed submission back to queued."""

    submission_id: str
    operation: Operation
    source: Source
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class CsvUploadStarted:
    """A CSV file was parsed and its rows were put on the queue as one batch."""

    batch_id: str
    file_name: str | None
    operation: Operation
    total_rows: int
    skipped_rows: int = 0
    ip_address: str | None = None
    user_agent: str | None = None
    occurred_at: datetime = field(default_factory=_now)


DomainEvent = SubmissionProcessed | DuplicateDetected | BatchCompleted | SubmissionRequeued | CsvUploadStarted


@runtime_checkable
class EventSubscriber(Protocol):
    name: str

    async def handle(self, event: DomainEvent) -> None: ...


@dataclass(frozen=True)
class EventBus:
    """Delivers each event to every subscriber in registration order.

    A subscriber error is logged and does not stop delivery to the rest.
    """

    subscribers: tuple[EventSubscriber, ...] = ()

    async def publish(self, event: DomainEvent) -> list[str]:
        failed: list[str] = []
        for subscriber in self.subscribers:
            try:
                await subscriber.handle(event)
            except Exception:
                failed.append(subscriber.name)
                logger.exception(
                    "event subscriber failed",
                    extra={"subscriber": subscriber.name, "event": type(event).__name__},
                )
        return failed
