from __future__ import annotations

from intake.api.handlers.deps import ApiDeps
from intake.api.schemas import SubmissionResponse
from intake.domain.use_cases.requeue import requeue_submission

COMPONENT_ID = "api.requeue_submission"


async def requeue_submission_handler(
    *,
    submission_id: str,
    api_deps: ApiDeps,
) -> SubmissionResponse | None:
    """Operator re-queue of a failed submission; None when it does not exist."""
    requeued = await requeue_submission(
        submission_id=submission_id,
        store=api_deps.store,
        queue=api_deps.queue,
        events=api_deps.events,
    )
    if requeued is None:
        return None
    return SubmissionResponse.from_snapshot(requeued)
