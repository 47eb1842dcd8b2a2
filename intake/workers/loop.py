from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

from intake.domain.contracts import WorkQueue
from intake.domain.duplicates import BatchScope
from intake.domain.error_taxonomy import ErrorCode
from intake.domain.errors import DomainInvariantError, UnsupportedOperationError, WorkItemDecodeError
from intake.domain.events import SubmissionProcessed
from intake.domain.models import (
    NewSubmission,
    Operation,
    ReservedJob,
    RowOutcome,
    RowRetryable,
    Source,
    SubmissionPatch,
    SubmissionSnapshot,
    SubmissionStatus,
    WorkItem,
)
from intake.lib.work_items import decode_work_item
from intake.lib.work_items.types import RowPayload, WorkItemPayload
from intake.workers.handlers.deps import WorkerDeps
from intake.workers.handlers.submission import fail_unfinished_rows, process_row, summarize_batch

logger = logging.getLogger("runtime")


def retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    """Exponential backoff for a released work item: base * 2^(attempt-1), capped."""
    exponent = max(attempt - 1, 0)
    return min(base_seconds * (2**exponent), max_seconds)


@dataclass
class WorkerLoop:
    role: str
    worker_id: str
    tubes: tuple[str, ...]
    queue: WorkQueue
    deps: WorkerDeps
    reserve_timeout_ms: int = 1000
    claim_lease_seconds: int = 60
    heartbeat_interval_ms: int = 10000
    max_attempts: int = 3
    retry_base_delay_seconds: int = 5
    retry_max_delay_seconds: int = 300

    async def run_once(self) -> bool:
        job = await self.queue.reserve(
            tubes=self.tubes,
            worker_id=self.worker_id,
            timeout_seconds=self.reserve_timeout_ms / 1000,
            ttr_seconds=self.claim_lease_seconds,
        )
        if job is None:
            return False

        lease_lost = False
        stop_heartbeat = asyncio.Event()

        async def _heartbeat_loop() -> None:
            nonlocal lease_lost
            interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
            while not stop_heartbeat.is_set():
                try:
                    await asyncio.wait_for(stop_heartbeat.wait(), timeout=interval_seconds)
                    break
                except TimeoutError:
                    pass

                heartbeat_ok = await self.queue.touch(job=job, ttr_seconds=self.claim_lease_seconds)
                if not heartbeat_ok:
                    lease_lost = True
                    stop_heartbeat.set()
                    break

        heartbeat_task = asyncio.create_task(_heartbeat_loop())
        try:
            try:
                item = decode_work_item(job.payload)
            except (WorkItemDecodeError, UnsupportedOperationError) as exc:
                await self._bury_undecodable(job, exc)
                return True
            outcomes = await self._process_item(item)
        finally:
            stop_heartbeat.set()
            await heartbeat_task

        if lease_lost:
            raise DomainInvariantError("claim ownership is stale")

        await self._acknowledge(job, item, outcomes)
        return True

    async def _process_item(self, item: WorkItem) -> dict[str, RowOutcome]:
        # Each row is independent; one failing row never stops its siblings.
        batch = BatchScope.from_rows(item.rows)
        outcomes: dict[str, RowOutcome] = {}
        for row in item.rows:
            outcomes[row.submission_id] = await process_row(
                self.deps,
                item=item,
                row=row,
                worker_id=self.worker_id,
                batch=batch,
            )
        return outcomes

    async def _acknowledge(self, job: ReservedJob, item: WorkItem, outcomes: dict[str, RowOutcome]) -> None:
        retryable = [outcome for outcome in outcomes.values() if isinstance(outcome, RowRetryable)]
        if not retryable:
            await self.queue.delete(job=job)
            logger.info(
                "work item acknowledged",
                extra={"job_id": job.job_id, "tube": job.tube, "item_id": item.item_id, "rows": len(item.rows)},
            )
            await self._publish_batch_summary(item, outcomes)
            return

        if job.reserves >= self.max_attempts:
            error_code: ErrorCode = "retries_exhausted"
            detail = f"Processing gave up after {job.reserves} attempts: {retryable[0].detail}"
            await self.queue.bury(job=job, reason=detail)
            written = await fail_unfinished_rows(
                self.deps,
                item=item,
                outcomes=outcomes,
                error_code=error_code,
                detail=detail,
            )
            logger.error(
                "work item buried",
                extra={
                    "job_id": job.job_id,
                    "tube": job.tube,
                    "item_id": item.item_id,
                    "attempts": job.reserves,
                    "failed_rows": len(written),
                },
            )
            await self._publish_batch_summary(item, outcomes)
            return

        delay = retry_delay_seconds(
            attempt=job.reserves,
            base_seconds=self.retry_base_delay_seconds,
            max_seconds=self.retry_max_delay_seconds,
        )
        await self.queue.release(job=job, delay_seconds=delay)
        logger.warning(
            "work item released for retry",
            extra={
                "job_id": job.job_id,
                "tube": job.tube,
                "item_id": item.item_id,
                "attempts": job.reserves,
                "delay_seconds": delay,
                "error_code": retryable[0].error_code,
            },
        )

    async def _publish_batch_summary(self, item: WorkItem, outcomes: dict[str, RowOutcome]) -> None:
        if item.is_batch:
            await self.deps.events.publish(summarize_batch(item, outcomes))

    async def _bury_undecodable(self, job: ReservedJob, exc: Exception) -> None:
        detail = str(exc)
        error_code: ErrorCode = (
            "unsupported_operation" if isinstance(exc, UnsupportedOperationError) else "malformed_work_item"
        )
        await self.queue.bury(job=job, reason=detail)
        logger.error(
            "undecodable work item buried",
            extra={"job_id": job.job_id, "tube": job.tube, "error_code": error_code, "error": detail},
        )
        await self._fail_known_rows(job, error_code=error_code, detail=detail)

    async def _fail_known_rows(self, job: ReservedJob, *, error_code: ErrorCode, detail: str) -> None:
        """Leave a failed record for each row of an undecodable item, if the envelope parses.

        Rows already recorded are moved to failed. Rows never recorded get a
        failed record of their own, unless their operation is not one the
        store can hold.
        """
        try:
            envelope = WorkItemPayload.model_validate_json(job.payload)
        except ValueError:
            return
        for row in envelope.rows:
            try:
                current = await self.deps.store.get_submission(submission_id=row.submission_id)
                if current is None:
                    failed = await self._insert_failed_row(envelope, row, error_code=error_code, detail=detail)
                    if failed is None:
                        continue
                elif current.status in (SubmissionStatus.COMPLETED, SubmissionStatus.FAILED):
                    continue
                else:
                    failed = await self.deps.store.transition_submission(
                        submission_id=row.submission_id,
                        from_state=current.status,
                        patch=SubmissionPatch(
                            status=SubmissionStatus.FAILED,
                            error_message=detail,
                            error_code=error_code,
                            mark_processed=True,
                        ),
                    )
                await self.deps.events.publish(SubmissionProcessed(submission=failed))
            except Exception:
                logger.exception(
                    "could not record failed row",
                    extra={"submission_id": row.submission_id, "job_id": job.job_id},
                )

    async def _insert_failed_row(
        self,
        envelope: WorkItemPayload,
        row: RowPayload,
        *,
        error_code: ErrorCode,
        detail: str,
    ) -> SubmissionSnapshot | None:
        try:
            operation = Operation.parse(row.operation)
        except UnsupportedOperationError:
            logger.warning(
                "row with unsupported operation left unrecorded",
                extra={"submission_id": row.submission_id, "operation": row.operation},
            )
            return None
        return await self.deps.store.insert_submission(
            submission=NewSubmission(
                submission_id=row.submission_id,
                operation=operation,
                source=Source(row.source),
                payload=dict(row.data),
                status=SubmissionStatus.FAILED,
                target_id=row.target_id,
                csv_row=row.csv_row,
                batch_id=envelope.item_id if envelope.kind == "batch" else None,
                file_name=envelope.file_name,
                ip_address=envelope.ip_address,
                user_agent=envelope.user_agent,
                error_message=detail,
                error_code=error_code,
            )
        )
