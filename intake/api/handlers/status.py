from __future__ import annotations

from intake.api.handlers.deps import ApiDeps
from intake.api.schemas import SubmissionResponse

COMPONENT_ID = "api.get_submission_status"


async def get_submission_status_handler(
    *,
    submission_id: str,
    api_deps: ApiDeps,
) -> SubmissionResponse | None:
    snapshot = await api_deps.store.get_submission(submission_id=submission_id)
    if snapshot is None:
        return None
    return SubmissionResponse.from_snapshot(snapshot)
