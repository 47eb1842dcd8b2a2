from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from intake.domain.contracts import MirrorSink, WorkQueue
from intake.domain.events import BatchCompleted, DomainEvent, DuplicateDetected, SubmissionProcessed
from intake.lib.work_items.types import MirrorEventPayload

logger = logging.getLogger("worker")

MIRROR_TUBE = "csv_jobs_json"


def mirror_payload_for(event: DomainEvent) -> MirrorEventPayload | None:
    match event:
        case SubmissionProcessed(submission=submission):
            data = dict(submission.payload)
            if submission.target_id is not None:
                data.setdefault("id", submission.target_id)
            return MirrorEventPayload(
                event="submission.processed",
                submission_id=submission.submission_id,
                operation=submission.operation.value,
                source=submission.source.value,
                status=submission.status.value,
                person_id=submission.person_id,
                email=submission.email,
                error=submission.error_message,
                data=data,
                occurred_at=event.occurred_at.isoformat(),
            )
        case DuplicateDetected():
            return MirrorEventPayload(
                event="submission.duplicate",
                submission_id=event.submission_id,
                source=event.source.value,
                email=event.email,
                data={"duplicate_of": event.duplicate_of, "csv_row": event.csv_row},
                occurred_at=event.occurred_at.isoformat(),
            )
        case BatchCompleted():
            return MirrorEventPayload(
                event="batch.completed",
                data={
                    "batch_id": event.batch_id,
                    "file_name": event.file_name,
                    "total_rows": event.total_rows,
                    "completed": event.completed,
                    "invalid": event.invalid,
                    "duplicates": event.duplicates,
                },
                occurred_at=event.occurred_at.isoformat(),
            )
        case _:
            return None


@dataclass(frozen=True)
class QueueMirrorSink:
    """Forwards mirror events onto a dedicated tube of the work queue."""

    queue: WorkQueue
    tube: str = MIRROR_TUBE

    async def publish(self, *, payload: str) -> None:
        await self.queue.put(tube=self.tube, payload=payload.encode("utf-8"))


@dataclass(frozen=True)
class MirrorPublisher:
    sink: MirrorSink
    name: str = "mirror"

    async def handle(self, event: DomainEvent) -> None:
        payload = mirror_payload_for(event)
        if payload is None:
            return
        try:
            await self.sink.publish(
                payload=json.dumps(payload.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":"))
            )
        except Exception as exc:
            logger.warning(
                "failed to mirror event",
                extra={"event": payload.event, "submission_id": payload.submission_id, "error": str(exc)},
            )
