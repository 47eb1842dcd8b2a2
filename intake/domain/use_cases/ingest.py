from __future__ import annotations

import logging

from pandas.errors import EmptyDataError, ParserError

from intake.domain.contracts import RecordStore, WorkQueue
from intake.domain.dto import (
    EnqueueResult,
    SubmitBatchCommand,
    SubmitCsvCommand,
    SubmitRowCommand,
    SubmitSingleCommand,
)
from intake.domain.errors import DomainDependencyError, DomainValidationError
from intake.domain.events import CsvUploadStarted, EventBus, SubmissionProcessed
from intake.domain.ids import new_submission_id, new_work_item_id
from intake.domain.models import (
    NewSubmission,
    Operation,
    Source,
    SubmissionPatch,
    SubmissionRow,
    SubmissionStatus,
    WorkItem,
    WorkItemKind,
)
from intake.lib.work_items import encode_work_item, parse_csv_rows, split_target_id

COMPONENT_ID = "domain.submission.enqueue"
logger = logging.getLogger("runtime")

SOURCE_TUBES: dict[Source, str] = {
    Source.FORM: "form_submissions",
    Source.API: "api_submissions",
    Source.CSV: "csv_jobs",
}


def tube_for(source: Source) -> str:
    return SOURCE_TUBES[source]


async def enqueue_submission(
    cmd: SubmitSingleCommand,
    *,
    store: RecordStore,
    queue: WorkQueue,
    events: EventBus | None = None,
) -> EnqueueResult:
    """Record one change request as queued and put it on its source tube.

    The submission record exists before the work item does, so a caller can
    poll it immediately. If the put fails the record is marked failed and,
    when an event bus is given, reported like any other failed submission.
    """
    operation = Operation.parse(cmd.row.operation)
    row = SubmissionRow(
        submission_id=new_submission_id(),
        operation=operation,
        source=cmd.source,
        data=dict(cmd.row.data),
        target_id=cmd.row.target_id,
    )
    item = WorkItem(
        item_id=new_work_item_id(),
        kind=WorkItemKind.SINGLE,
        rows=(row,),
        ip_address=cmd.ip_address,
        user_agent=cmd.user_agent,
    )
    await store.insert_submission(
        submission=NewSubmission(
            submission_id=row.submission_id,
            operation=operation,
            source=cmd.source,
            payload=row.data,
            target_id=row.target_id,
            ip_address=cmd.ip_address,
            user_agent=cmd.user_agent,
        )
    )

    tube = tube_for(cmd.source)
    try:
        job_id = await queue.put(tube=tube, payload=encode_work_item(item))
    except Exception as exc:
        failed = await store.transition_submission(
            submission_id=row.submission_id,
            from_state=SubmissionStatus.QUEUED,
            patch=SubmissionPatch(
                status=SubmissionStatus.FAILED,
                error_message=f"Could not enqueue submission: {exc}",
                error_code="queue_unavailable",
                mark_processed=True,
            ),
        )
        logger.exception("enqueue failed", extra={"submission_id": row.submission_id, "tube": tube})
        if events is not None:
            await events.publish(SubmissionProcessed(submission=failed))
        raise DomainDependencyError(f"work queue unavailable: {exc}") from exc

    logger.info(
        "submission queued",
        extra={"submission_id": row.submission_id, "job_id": job_id, "tube": tube},
    )
    return EnqueueResult(item_id=item.item_id, job_id=job_id, tube=tube, submission_ids=(row.submission_id,))


async def enqueue_batch(cmd: SubmitBatchCommand, *, queue: WorkQueue) -> EnqueueResult:
    """Put a multi-row work item on the queue.

    Submission records for batch rows are created by the worker on first
    dequeue, keyed by the ids assigned here.
    """
    if not cmd.rows:
        raise DomainValidationError("batch must contain at least one row")
    rows = tuple(_batch_row(row, source=cmd.source, csv_row=index) for index, row in enumerate(cmd.rows, start=1))
    item = WorkItem(
        item_id=new_work_item_id(),
        kind=WorkItemKind.BATCH,
        rows=rows,
        file_name=cmd.file_name,
        total_rows=len(rows),
        ip_address=cmd.ip_address,
        user_agent=cmd.user_agent,
    )
    tube = tube_for(cmd.source)
    try:
        job_id = await queue.put(tube=tube, payload=encode_work_item(item))
    except Exception as exc:
        logger.exception("enqueue failed", extra={"item_id": item.item_id, "tube": tube})
        raise DomainDependencyError(f"work queue unavailable: {exc}") from exc

    logger.info(
        "batch queued",
        extra={"item_id": item.item_id, "job_id": job_id, "tube": tube, "rows": len(rows)},
    )
    return EnqueueResult(
        item_id=item.item_id,
        job_id=job_id,
        tube=tube,
        submission_ids=tuple(row.submission_id for row in rows),
    )


async def enqueue_csv(
    cmd: SubmitCsvCommand,
    *,
    queue: WorkQueue,
    events: EventBus | None = None,
) -> EnqueueResult:
    operation = Operation.parse(cmd.operation)
    try:
        parsed_rows, skipped = parse_csv_rows(cmd.content)
    except EmptyDataError as exc:
        raise DomainValidationError("CSV file is empty") from exc
    except ParserError as exc:
        raise DomainValidationError(f"CSV file could not be parsed: {exc}") from exc
    if not parsed_rows:
        raise DomainValidationError("CSV file contains no data rows")

    rows: list[SubmitRowCommand] = []
    for raw in parsed_rows:
        data, target_id = split_target_id(dict(raw))
        rows.append(SubmitRowCommand(operation=cmd.operation, data=data, target_id=target_id))

    result = await enqueue_batch(
        SubmitBatchCommand(
            source=Source.CSV,
            rows=tuple(rows),
            file_name=cmd.file_name,
            ip_address=cmd.ip_address,
            user_agent=cmd.user_agent,
        ),
        queue=queue,
    )
    if skipped:
        logger.warning(
            "csv rows skipped",
            extra={"item_id": result.item_id, "file_name": cmd.file_name, "skipped": len(skipped)},
        )
    if events is not None:
        await events.publish(
            CsvUploadStarted(
                batch_id=result.item_id,
                file_name=cmd.file_name,
                operation=operation,
                total_rows=len(rows),
                skipped_rows=len(skipped),
                ip_address=cmd.ip_address,
                user_agent=cmd.user_agent,
            )
        )
    return EnqueueResult(
        item_id=result.item_id,
        job_id=result.job_id,
        tube=result.tube,
        submission_ids=result.submission_ids,
        skipped_rows=tuple(skipped),
    )


def _batch_row(row: SubmitRowCommand, *, source: Source, csv_row: int) -> SubmissionRow:
    return SubmissionRow(
        submission_id=new_submission_id(),
        operation=Operation.parse(row.operation),
        source=source,
        data=dict(row.data),
        target_id=row.target_id,
        csv_row=csv_row if source == Source.CSV else None,
    )
