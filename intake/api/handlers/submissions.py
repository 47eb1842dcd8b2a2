from __future__ import annotations

from intake.api.handlers.deps import ApiDeps
from intake.api.schemas import (
    CreateBatchRequest,
    CreateSubmissionRequest,
    EnqueueResponse,
    SubmissionListResponse,
    SubmissionResponse,
)
from intake.domain.dto import (
    EnqueueResult,
    SubmitBatchCommand,
    SubmitCsvCommand,
    SubmitRowCommand,
    SubmitSingleCommand,
)
from intake.domain.models import Operation, Source, SubmissionListQuery, SubmissionStatus
from intake.domain.use_cases.ingest import enqueue_batch, enqueue_csv, enqueue_submission

COMPONENT_ID = "api.create_submission"


async def create_submission_handler(
    *,
    request: CreateSubmissionRequest,
    ip_address: str | None,
    user_agent: str | None,
    api_deps: ApiDeps,
) -> EnqueueResponse:
    result = await enqueue_submission(
        SubmitSingleCommand(
            source=Source(request.source),
            row=SubmitRowCommand(operation=request.operation, data=request.data, target_id=request.target_id),
            ip_address=ip_address,
            user_agent=user_agent,
        ),
        store=api_deps.store,
        queue=api_deps.queue,
        events=api_deps.events,
    )
    return _enqueue_response(result)


async def create_batch_handler(
    *,
    request: CreateBatchRequest,
    ip_address: str | None,
    user_agent: str | None,
    api_deps: ApiDeps,
) -> EnqueueResponse:
    result = await enqueue_batch(
        SubmitBatchCommand(
            source=Source(request.source),
            rows=tuple(
                SubmitRowCommand(operation=row.operation, data=row.data, target_id=row.target_id)
                for row in request.rows
            ),
            file_name=request.file_name,
            ip_address=ip_address,
            user_agent=user_agent,
        ),
        queue=api_deps.queue,
    )
    return _enqueue_response(result)


async def upload_csv_handler(
    *,
    filename: str,
    payload: bytes,
    operation: str,
    ip_address: str | None,
    user_agent: str | None,
    api_deps: ApiDeps,
) -> EnqueueResponse:
    result = await enqueue_csv(
        SubmitCsvCommand(
            content=payload,
            file_name=filename,
            operation=operation,
            ip_address=ip_address,
            user_agent=user_agent,
        ),
        queue=api_deps.queue,
        events=api_deps.events,
    )
    return _enqueue_response(result)


async def list_submissions_handler(
    *,
    status: SubmissionStatus | None,
    operation: Operation | None,
    source: Source | None,
    email: str | None,
    batch_id: str | None,
    limit: int,
    offset: int,
    api_deps: ApiDeps,
) -> SubmissionListResponse:
    snapshots = await api_deps.store.list_submissions(
        query=SubmissionListQuery(
            statuses=(status,) if status is not None else None,
            operation=operation,
            source=source,
            email=email,
            batch_id=batch_id,
            limit=limit,
            offset=offset,
        )
    )
    return SubmissionListResponse(
        items=[SubmissionResponse.from_snapshot(snapshot) for snapshot in snapshots],
        limit=limit,
        offset=offset,
    )


def _enqueue_response(result: EnqueueResult) -> EnqueueResponse:
    return EnqueueResponse(
        item_id=result.item_id,
        job_id=result.job_id,
        tube=result.tube,
        submission_ids=list(result.submission_ids),
        skipped_rows=list(result.skipped_rows),
    )
