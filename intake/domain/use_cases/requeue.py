from __future__ import annotations

import logging

from intake.domain.contracts import RecordStore, WorkQueue
from intake.domain.errors import DomainDependencyError
from intake.domain.events import EventBus, SubmissionRequeued
from intake.domain.ids import new_work_item_id
from intake.domain.models import (
    SubmissionPatch,
    SubmissionRow,
    SubmissionSnapshot,
    SubmissionStatus,
    WorkItem,
    WorkItemKind,
)
from intake.domain.use_cases.ingest import tube_for
from intake.lib.work_items import encode_work_item

COMPONENT_ID = "domain.submission.requeue"
logger = logging.getLogger("runtime")


async def requeue_submission(
    *,
    submission_id: str,
    store: RecordStore,
    queue: WorkQueue,
    events: EventBus,
) -> SubmissionSnapshot | None:
    """Operator path from failed back to queued.

    Returns None when the submission does not exist. Any other starting
    status raises DomainInvariantError from the lifecycle check.
    """
    current = await store.get_submission(submission_id=submission_id)
    if current is None:
        return None

    requeued = await store.transition_submission(
        submission_id=submission_id,
        from_state=current.status,
        patch=SubmissionPatch(status=SubmissionStatus.QUEUED, clear_error=True),
        operator=True,
    )
    item = WorkItem(
        item_id=new_work_item_id(),
        kind=WorkItemKind.SINGLE,
        rows=(
            SubmissionRow(
                submission_id=requeued.submission_id,
                operation=requeued.operation,
                source=requeued.source,
                data=dict(requeued.payload),
                target_id=requeued.target_id,
                csv_row=requeued.csv_row,
            ),
        ),
        file_name=requeued.file_name,
        ip_address=requeued.ip_address,
        user_agent=requeued.user_agent,
    )
    tube = tube_for(requeued.source)
    try:
        job_id = await queue.put(tube=tube, payload=encode_work_item(item))
    except Exception as exc:
        # No SubmissionRequeued went out, so the failed counter still includes this record.
        await store.transition_submission(
            submission_id=submission_id,
            from_state=SubmissionStatus.QUEUED,
            patch=SubmissionPatch(
                status=SubmissionStatus.FAILED,
                error_message=f"Could not enqueue submission: {exc}",
                error_code="queue_unavailable",
                mark_processed=True,
            ),
        )
        raise DomainDependencyError(f"work queue unavailable: {exc}") from exc

    await events.publish(
        SubmissionRequeued(
            submission_id=requeued.submission_id,
            operation=requeued.operation,
            source=requeued.source,
        )
    )
    logger.info(
        "submission requeued",
        extra={"submission_id": submission_id, "job_id": job_id, "tube": tube},
    )
    return requeued
