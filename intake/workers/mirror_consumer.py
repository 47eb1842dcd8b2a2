from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from pydantic import ValidationError

from intake.domain.contracts import WorkQueue
from intake.fanout.mirror import MIRROR_TUBE
from intake.lib.work_items.types import MirrorEventPayload

logger = logging.getLogger("worker")

MirrorHandler = Callable[[MirrorEventPayload], Awaitable[None]]


async def log_mirror_event(payload: MirrorEventPayload) -> None:
    logger.info(
        "mirror event consumed",
        extra={
            "event": payload.event,
            "submission_id": payload.submission_id,
            "status": payload.status,
            "occurred_at": payload.occurred_at,
        },
    )


@dataclass
class MirrorConsumerLoop:
    """Drains the mirror tube so forwarded events never accumulate in the queue.

    Each event goes to `handler`; a payload that does not parse is buried,
    and a handler error releases the job for another attempt until
    `max_attempts` is reached.
    """

    role: str
    worker_id: str
    queue: WorkQueue
    handler: MirrorHandler = log_mirror_event
    tubes: tuple[str, ...] = (MIRROR_TUBE,)
    reserve_timeout_ms: int = 1000
    claim_lease_seconds: int = 60
    max_attempts: int = 3
    retry_base_delay_seconds: int = 5

    async def run_once(self) -> bool:
        job = await self.queue.reserve(
            tubes=self.tubes,
            worker_id=self.worker_id,
            timeout_seconds=self.reserve_timeout_ms / 1000,
            ttr_seconds=self.claim_lease_seconds,
        )
        if job is None:
            return False

        try:
            payload = MirrorEventPayload.model_validate_json(job.payload)
        except ValidationError as exc:
            await self.queue.bury(job=job, reason=f"malformed mirror event: {exc.error_count()} errors")
            logger.error("malformed mirror event buried", extra={"job_id": job.job_id, "tube": job.tube})
            return True

        try:
            await self.handler(payload)
        except Exception as exc:
            if job.reserves >= self.max_attempts:
                await self.queue.bury(job=job, reason=f"mirror handler failed: {exc}")
                logger.error("mirror event buried", extra={"job_id": job.job_id, "error": str(exc)})
            else:
                await self.queue.release(job=job, delay_seconds=self.retry_base_delay_seconds * job.reserves)
                logger.warning("mirror event released for retry", extra={"job_id": job.job_id, "error": str(exc)})
            return True

        await self.queue.delete(job=job)
        return True
