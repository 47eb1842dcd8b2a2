from __future__ import annotations

import logging
from dataclasses import dataclass

from intake.domain.duplicates import BatchScope
from intake.domain.error_taxonomy import ErrorCode, error_code_for_exception
from intake.domain.errors import (
    DomainValidationError,
    DuplicateRecordError,
    TargetNotFoundError,
)
from intake.domain.events import BatchCompleted, DuplicateDetected, SubmissionProcessed
from intake.domain.ids import new_person_id
from intake.domain.lifecycle import is_terminal
from intake.domain.models import (
    NewSubmission,
    Operation,
    PersonSnapshot,
    RowCompleted,
    RowOutcome,
    RowRejected,
    RowRetryable,
    RowSkipped,
    SubmissionPatch,
    SubmissionRow,
    SubmissionSnapshot,
    SubmissionStatus,
    WorkItem,
)
from intake.domain.validation import (
    ValidatedPayload,
    ValidationFailure,
    check_identity_available,
    normalize_email,
    validate_payload,
)
from intake.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.submission.process_row"
logger = logging.getLogger("worker")


@dataclass(frozen=True)
class _Applied:
    payload: dict[str, object]
    person_id: str | None
    replayed: bool = False


async def process_row(
    deps: WorkerDeps,
    *,
    item: WorkItem,
    row: SubmissionRow,
    worker_id: str,
    batch: BatchScope,
) -> RowOutcome:
    """Carry one row from queued to a terminal status.

    Business failures are written to the submission record and returned as
    RowRejected. Anything else leaves the row in processing and comes back
    as RowRetryable so the work item is released for another attempt.
    """
    try:
        return await _process_row(deps, item=item, row=row, worker_id=worker_id, batch=batch)
    except Exception as exc:
        error_code = error_code_for_exception(exc)
        logger.warning(
            "row processing interrupted",
            extra={
                "submission_id": row.submission_id,
                "item_id": item.item_id,
                "error_code": error_code,
                "error": str(exc),
            },
        )
        return RowRetryable(submission_id=row.submission_id, error_code=error_code, detail=str(exc))


async def _process_row(
    deps: WorkerDeps,
    *,
    item: WorkItem,
    row: SubmissionRow,
    worker_id: str,
    batch: BatchScope,
) -> RowOutcome:
    current = await _create_or_load(deps, item=item, row=row)
    if is_terminal(current.status):
        # Redelivered after the terminal write: no second effect, no second event.
        return RowSkipped(submission_id=row.submission_id, status=current.status, error_code=current.error_code)

    await deps.store.transition_submission(
        submission_id=row.submission_id,
        from_state=current.status,
        patch=SubmissionPatch(status=SubmissionStatus.PROCESSING, claimed_by=worker_id, count_attempt=True),
        worker_id=worker_id,
    )

    try:
        applied = await _apply(deps, row=row, batch=batch)
    except DomainValidationError as exc:
        return await _reject(deps, item=item, row=row, worker_id=worker_id, exc=exc)

    completed = await deps.store.transition_submission(
        submission_id=row.submission_id,
        from_state=SubmissionStatus.PROCESSING,
        patch=SubmissionPatch(
            status=SubmissionStatus.COMPLETED,
            payload=applied.payload,
            person_id=applied.person_id,
            clear_error=True,
            mark_processed=True,
        ),
        worker_id=worker_id,
    )
    await deps.events.publish(SubmissionProcessed(submission=completed))
    logger.info(
        "row completed",
        extra={
            "submission_id": row.submission_id,
            "operation": row.operation.value,
            "person_id": applied.person_id,
            "replayed": str(applied.replayed).lower(),
        },
    )
    return RowCompleted(submission_id=row.submission_id, person_id=applied.person_id, replayed=applied.replayed)


async def _create_or_load(deps: WorkerDeps, *, item: WorkItem, row: SubmissionRow) -> SubmissionSnapshot:
    existing = await deps.store.get_submission(submission_id=row.submission_id)
    if existing is not None:
        return existing
    return await deps.store.insert_submission(
        submission=NewSubmission(
            submission_id=row.submission_id,
            operation=row.operation,
            source=row.source,
            payload=dict(row.data),
            target_id=row.target_id,
            csv_row=row.csv_row,
            batch_id=item.item_id if item.is_batch else None,
            file_name=item.file_name,
            ip_address=item.ip_address,
            user_agent=item.user_agent,
        )
    )


async def _apply(deps: WorkerDeps, *, row: SubmissionRow, batch: BatchScope) -> _Applied:
    match row.operation:
        case Operation.CREATE:
            return await _apply_create(deps, row=row, batch=batch)
        case Operation.UPDATE:
            return await _apply_update(deps, row=row)
        case Operation.DELETE:
            return await _apply_delete(deps, row=row)


async def _apply_create(deps: WorkerDeps, *, row: SubmissionRow, batch: BatchScope) -> _Applied:
    validated = _require_valid(validate_payload(row.data, Operation.CREATE, source=row.source))
    email = normalize_email(validated.email or "")

    existing = await deps.store.find_person_by_email(email=email)
    if existing is not None and existing.submission_id == row.submission_id:
        # Mutation landed on an earlier delivery; only the status write was lost.
        return _Applied(payload=validated.data, person_id=existing.person_id, replayed=True)

    duplicate = await deps.detector.find_duplicate(email, submission_id=row.submission_id, batch=batch)
    if duplicate is not None:
        raise duplicate.to_error()

    person = await deps.store.insert_person(
        person_id=new_person_id(),
        email=email,
        data=validated.data,
        submission_id=row.submission_id,
    )
    return _Applied(payload=validated.data, person_id=person.person_id)


async def _apply_update(deps: WorkerDeps, *, row: SubmissionRow) -> _Applied:
    validated = _require_valid(validate_payload(row.data, Operation.UPDATE, source=row.source))
    email = normalize_email(validated.email or "")

    target: PersonSnapshot | None
    if row.target_id is not None:
        target = await deps.store.get_person(person_id=row.target_id)
    else:
        target = await deps.store.find_person_by_email(email=email)
    if target is None:
        raise TargetNotFoundError(f"Record not found for update: {row.target_id or email}")

    conflict = await check_identity_available(deps.store, email=email, ignore_identity=target.person_id)
    if conflict is not None:
        raise DomainValidationError(ValidationFailure(errors=(conflict,)).message())

    person = await deps.store.update_person(person_id=target.person_id, email=email, data=validated.data)
    return _Applied(payload=validated.data, person_id=person.person_id)


async def _apply_delete(deps: WorkerDeps, *, row: SubmissionRow) -> _Applied:
    validated = _require_valid(
        validate_payload(row.data, Operation.DELETE, source=row.source, target_id=row.target_id)
    )
    target_id = row.target_id or ""
    person = await deps.store.get_person(person_id=target_id)
    if person is None:
        raise TargetNotFoundError(f"Record not found for delete: {target_id}")

    await deps.store.delete_person(person_id=person.person_id)
    payload = dict(validated.data)
    payload.setdefault("email", person.email)
    return _Applied(payload=payload, person_id=person.person_id)


def _require_valid(result: ValidatedPayload | ValidationFailure) -> ValidatedPayload:
    if isinstance(result, ValidationFailure):
        raise DomainValidationError(result.message())
    return result


async def _reject(
    deps: WorkerDeps,
    *,
    item: WorkItem,
    row: SubmissionRow,
    worker_id: str,
    exc: DomainValidationError,
) -> RowRejected:
    error_code = error_code_for_exception(exc)
    duplicate_of = exc.duplicate_of if isinstance(exc, DuplicateRecordError) else None
    failed = await deps.store.transition_submission(
        submission_id=row.submission_id,
        from_state=SubmissionStatus.PROCESSING,
        patch=SubmissionPatch(
            status=SubmissionStatus.FAILED,
            error_message=str(exc),
            error_code=error_code,
            duplicate_of=duplicate_of,
            mark_processed=True,
        ),
        worker_id=worker_id,
    )
    if duplicate_of is not None:
        await deps.events.publish(
            DuplicateDetected(
                submission_id=row.submission_id,
                email=normalize_email(str(row.data.get("email", ""))),
                source=row.source,
                duplicate_of=duplicate_of,
                csv_row=row.csv_row,
                batch_id=item.item_id if item.is_batch else None,
                file_name=item.file_name,
            )
        )
    await deps.events.publish(SubmissionProcessed(submission=failed))
    logger.info(
        "row rejected",
        extra={"submission_id": row.submission_id, "error_code": error_code, "duplicate_of": duplicate_of},
    )
    return RowRejected(
        submission_id=row.submission_id,
        error_code=error_code,
        detail=str(exc),
        duplicate_of=duplicate_of,
    )


async def fail_unfinished_rows(
    deps: WorkerDeps,
    *,
    item: WorkItem,
    outcomes: dict[str, RowOutcome],
    error_code: ErrorCode,
    detail: str,
) -> list[str]:
    """Best-effort failed records for rows that never reached a terminal state.

    Used when a work item is buried. Returns the submission ids written.
    """
    written: list[str] = []
    for row in item.rows:
        outcome = outcomes.get(row.submission_id)
        if isinstance(outcome, (RowCompleted, RowRejected, RowSkipped)):
            continue
        try:
            failed = await _force_failed(deps, item=item, row=row, error_code=error_code, detail=detail)
        except Exception:
            logger.exception(
                "could not record failed row",
                extra={"submission_id": row.submission_id, "item_id": item.item_id},
            )
            continue
        if failed is None:
            continue
        outcomes[row.submission_id] = RowRejected(
            submission_id=row.submission_id,
            error_code=error_code,
            detail=detail,
        )
        await deps.events.publish(SubmissionProcessed(submission=failed))
        written.append(row.submission_id)
    return written


async def _force_failed(
    deps: WorkerDeps,
    *,
    item: WorkItem,
    row: SubmissionRow,
    error_code: ErrorCode,
    detail: str,
) -> SubmissionSnapshot | None:
    current = await _create_or_load(deps, item=item, row=row)
    if is_terminal(current.status):
        return None
    return await deps.store.transition_submission(
        submission_id=row.submission_id,
        from_state=current.status,
        patch=SubmissionPatch(
            status=SubmissionStatus.FAILED,
            error_message=detail,
            error_code=error_code,
            mark_processed=True,
        ),
    )


def summarize_batch(item: WorkItem, outcomes: dict[str, RowOutcome]) -> BatchCompleted:
    completed = invalid = duplicates = 0
    for outcome in outcomes.values():
        match outcome:
            case RowCompleted():
                completed += 1
            case RowRejected(error_code="duplicate_email"):
                duplicates += 1
            case RowRejected():
                invalid += 1
            case RowSkipped(status=SubmissionStatus.COMPLETED):
                completed += 1
            case RowSkipped(error_code="duplicate_email"):
                duplicates += 1
            case RowSkipped():
                invalid += 1
    return BatchCompleted(
        batch_id=item.item_id,
        file_name=item.file_name,
        total_rows=item.total_rows if item.total_rows is not None else len(item.rows),
        completed=completed,
        invalid=invalid,
        duplicates=duplicates,
    )
