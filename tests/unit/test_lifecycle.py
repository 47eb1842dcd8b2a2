from __future__ import annotations

import asyncio

import pytest

from intake.domain.errors import DomainInvariantError
from intake.domain.lifecycle import ALLOWED_TRANSITIONS, can_transition, is_terminal
from intake.domain.models import NewSubmission, Operation, Source, SubmissionPatch, SubmissionStatus
from intake.repositories.stub import InMemoryRecordStore


async def _queued(store: InMemoryRecordStore, submission_id: str = "sub-1") -> None:
    await store.insert_submission(
        submission=NewSubmission(
            submission_id=submission_id,
            operation=Operation.CREATE,
            source=Source.FORM,
            payload={"email": "a@example.com"},
        )
    )


@pytest.mark.unit
def test_status_moves_forward_only() -> None:
    assert can_transition("queued", "processing") is True
    assert can_transition("processing", "processing") is True
    assert can_transition("processing", "completed") is True
    assert can_transition("completed", "failed") is False
    assert can_transition("failed", "queued") is False
    assert can_transition("failed", "queued", operator=True) is True
    assert can_transition("completed", "queued", operator=True) is False
    assert is_terminal("completed") and is_terminal("failed")
    assert not ALLOWED_TRANSITIONS[SubmissionStatus.COMPLETED]


@pytest.mark.unit
def test_transition_guard_rejects_invalid_and_stale_writes() -> None:
    store = InMemoryRecordStore()

    async def _run() -> None:
        await _queued(store)
        with pytest.raises(DomainInvariantError, match="invalid transition"):
            await store.transition_submission(
                submission_id="sub-1",
                from_state=SubmissionStatus.QUEUED,
                patch=SubmissionPatch(status=SubmissionStatus.COMPLETED),
            )
        with pytest.raises(DomainInvariantError, match="stale transition"):
            await store.transition_submission(
                submission_id="sub-1",
                from_state=SubmissionStatus.PROCESSING,
                patch=SubmissionPatch(status=SubmissionStatus.COMPLETED),
            )
        with pytest.raises(DomainInvariantError, match="not found"):
            await store.transition_submission(
                submission_id="missing",
                from_state=SubmissionStatus.QUEUED,
                patch=SubmissionPatch(status=SubmissionStatus.PROCESSING),
            )

    asyncio.run(_run())
    assert store.transitions == []


@pytest.mark.unit
def test_terminal_write_requires_current_claim_holder() -> None:
    store = InMemoryRecordStore()

    async def _run() -> None:
        await _queued(store)
        await store.transition_submission(
            submission_id="sub-1",
            from_state=SubmissionStatus.QUEUED,
            patch=SubmissionPatch(status=SubmissionStatus.PROCESSING, claimed_by="w-1", count_attempt=True),
            worker_id="w-1",
        )
        # Redelivered to w-2 after w-1's lease ran out.
        await store.transition_submission(
            submission_id="sub-1",
            from_state=SubmissionStatus.PROCESSING,
            patch=SubmissionPatch(status=SubmissionStatus.PROCESSING, claimed_by="w-2", count_attempt=True),
            worker_id="w-2",
        )
        with pytest.raises(DomainInvariantError, match="claim ownership is stale"):
            await store.transition_submission(
                submission_id="sub-1",
                from_state=SubmissionStatus.PROCESSING,
                patch=SubmissionPatch(status=SubmissionStatus.COMPLETED, mark_processed=True),
                worker_id="w-1",
            )
        done = await store.transition_submission(
            submission_id="sub-1",
            from_state=SubmissionStatus.PROCESSING,
            patch=SubmissionPatch(status=SubmissionStatus.COMPLETED, mark_processed=True),
            worker_id="w-2",
        )
        assert done.attempts == 2
        assert done.claimed_by is None
        assert done.processed_at is not None

    asyncio.run(_run())


@pytest.mark.unit
def test_operator_requeue_clears_error_and_processed_at() -> None:
    store = InMemoryRecordStore()

    async def _run() -> None:
        await _queued(store)
        failed = await store.transition_submission(
            submission_id="sub-1",
            from_state=SubmissionStatus.QUEUED,
            patch=SubmissionPatch(
                status=SubmissionStatus.FAILED,
                error_message="Validation failed: Student name is required.",
                error_code="validation_error",
                mark_processed=True,
            ),
        )
        assert failed.processed_at is not None

        with pytest.raises(DomainInvariantError):
            await store.transition_submission(
                submission_id="sub-1",
                from_state=SubmissionStatus.FAILED,
                patch=SubmissionPatch(status=SubmissionStatus.QUEUED, clear_error=True),
            )

        requeued = await store.transition_submission(
            submission_id="sub-1",
            from_state=SubmissionStatus.FAILED,
            patch=SubmissionPatch(status=SubmissionStatus.QUEUED, clear_error=True),
            operator=True,
        )
        assert requeued.error_message is None
        assert requeued.error_code is None
        assert requeued.processed_at is None
        assert requeued.payload == {"email": "a@example.com"}

    asyncio.run(_run())
    assert [transition[2] for transition in store.transitions] == ["failed", "queued"]
