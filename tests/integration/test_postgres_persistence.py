from __future__ import annotations

import asyncio

import pytest

from intake.clients.stub import InMemoryCounterStore, StubMirrorSink
from intake.domain.dto import SubmitBatchCommand, SubmitRowCommand, SubmitSingleCommand
from intake.domain.duplicates import DuplicateDetector
from intake.domain.errors import DomainInvariantError
from intake.domain.models import NewSubmission, Operation, Source, SubmissionListQuery, SubmissionPatch, SubmissionStatus
from intake.domain.use_cases.ingest import enqueue_batch, enqueue_submission, tube_for
from intake.fanout import build_event_bus
from intake.repositories.postgres import (
    AsyncpgPoolManager,
    PostgresNotificationStore,
    PostgresRecordStore,
    PostgresWorkQueue,
)
from intake.roles import ROLE_TUBES
from intake.workers.handlers.deps import WorkerDeps
from intake.workers.loop import WorkerLoop
from tests.integration.pipeline_support import drain, student
from tests.integration.postgres_test_utils import (
    INTAKE_TABLES,
    apply_down,
    apply_up,
    intake_tables,
    migration_files,
    require_postgres,
    reset_public_schema,
)


async def _fresh_manager(dsn: str) -> AsyncpgPoolManager:
    await reset_public_schema(dsn=dsn)
    await apply_up(dsn=dsn)
    manager = AsyncpgPoolManager(dsn=dsn)
    await manager.startup()
    return manager


@pytest.mark.unit
def test_migration_files_pair_up_and_down_in_apply_order() -> None:
    up = [path.name for path in migration_files("up")]
    down = [path.name for path in migration_files("down")]

    assert up[0] == "000001_bootstrap.up.sql"
    assert up == sorted(up)
    assert [name.replace(".down.", ".up.") for name in down] == list(reversed(up))


@pytest.mark.integration
def test_migration_up_down_up_contract() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            store = PostgresRecordStore(pool_manager=manager)
            assert await store.get_submission(submission_id="missing") is None
        finally:
            await manager.shutdown()
        assert await intake_tables(dsn=dsn) == INTAKE_TABLES

        await apply_down(dsn=dsn)
        assert await intake_tables(dsn=dsn) == ()

        await apply_up(dsn=dsn)
        assert await intake_tables(dsn=dsn) == INTAKE_TABLES

    asyncio.run(_run())


@pytest.mark.integration
def test_submission_transitions_are_compare_and_set() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        store = PostgresRecordStore(pool_manager=manager)
        try:
            created = await store.insert_submission(
                submission=NewSubmission(
                    submission_id="sub-cas-1",
                    operation=Operation.CREATE,
                    source=Source.FORM,
                    payload={"email": " Mixed@Example.com ", "name": "Mixed"},
                )
            )
            assert created.status == SubmissionStatus.QUEUED

            processing = await store.transition_submission(
                submission_id="sub-cas-1",
                from_state=SubmissionStatus.QUEUED,
                patch=SubmissionPatch(status=SubmissionStatus.PROCESSING, claimed_by="w-1", count_attempt=True),
                worker_id="w-1",
            )
            assert processing.claimed_by == "w-1"
            assert processing.attempts == 1

            with pytest.raises(DomainInvariantError, match="stale transition"):
                await store.transition_submission(
                    submission_id="sub-cas-1",
                    from_state=SubmissionStatus.QUEUED,
                    patch=SubmissionPatch(status=SubmissionStatus.PROCESSING, claimed_by="w-2"),
                )
            with pytest.raises(DomainInvariantError, match="claim ownership is stale"):
                await store.transition_submission(
                    submission_id="sub-cas-1",
                    from_state=SubmissionStatus.PROCESSING,
                    patch=SubmissionPatch(status=SubmissionStatus.COMPLETED, mark_processed=True),
                    worker_id="w-2",
                )

            completed = await store.transition_submission(
                submission_id="sub-cas-1",
                from_state=SubmissionStatus.PROCESSING,
                patch=SubmissionPatch(status=SubmissionStatus.COMPLETED, person_id="per-1", mark_processed=True),
                worker_id="w-1",
            )
            assert completed.claimed_by is None
            assert completed.processed_at is not None

            with pytest.raises(DomainInvariantError, match="invalid transition"):
                await store.transition_submission(
                    submission_id="sub-cas-1",
                    from_state=SubmissionStatus.COMPLETED,
                    patch=SubmissionPatch(status=SubmissionStatus.QUEUED),
                    operator=True,
                )

            matches = await store.find_completed_creates_by_email(email="mixed@example.com")
            assert [row.submission_id for row in matches] == ["sub-cas-1"]
            listed = await store.list_submissions(query=SubmissionListQuery(email="MIXED@example.com"))
            assert [row.submission_id for row in listed] == ["sub-cas-1"]
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_concurrent_reserve_exclusivity_skip_locked() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        queue = PostgresWorkQueue(pool_manager=manager)
        try:
            for idx in range(3):
                await queue.put(tube="form_submissions", payload=f"job-{idx}".encode())

            jobs = await asyncio.gather(
                *(
                    queue.reserve(
                        tubes=("form_submissions",),
                        worker_id=f"w-{idx}",
                        timeout_seconds=0,
                        ttr_seconds=30,
                    )
                    for idx in range(3)
                )
            )
            job_ids = [job.job_id for job in jobs if job is not None]
            assert len(job_ids) == 3
            assert len(set(job_ids)) == 3

            stats = await queue.stats(tube="form_submissions")
            assert (stats.ready, stats.reserved) == (0, 3)
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_release_bury_and_kick_progression() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        queue = PostgresWorkQueue(pool_manager=manager)
        try:
            await queue.put(tube="csv_jobs", payload=b"payload")
            first = await queue.reserve(tubes=("csv_jobs",), worker_id="w-1", timeout_seconds=0, ttr_seconds=30)
            assert first is not None and first.reserves == 1
            assert await queue.touch(job=first, ttr_seconds=30) is True

            await queue.release(job=first)
            with pytest.raises(DomainInvariantError, match="claim ownership is stale"):
                await queue.delete(job=first)

            second = await queue.reserve(tubes=("csv_jobs",), worker_id="w-2", timeout_seconds=0, ttr_seconds=30)
            assert second is not None
            assert second.job_id == first.job_id
            assert second.reserves == 2
            assert await queue.touch(job=first, ttr_seconds=30) is False

            await queue.bury(job=second, reason="gave up")
            stats = await queue.stats(tube="csv_jobs")
            assert (stats.ready, stats.buried) == (0, 1)

            assert await queue.kick(tube="csv_jobs") == 1
            stats = await queue.stats(tube="csv_jobs")
            assert (stats.ready, stats.buried) == (1, 0)
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_worker_pipeline_on_postgres_rejects_duplicates() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        store = PostgresRecordStore(pool_manager=manager)
        queue = PostgresWorkQueue(pool_manager=manager, poll_interval_seconds=0.01)
        notifications = PostgresNotificationStore(pool_manager=manager)
        events = build_event_bus(counters=InMemoryCounterStore(), notifications=notifications, mirror=StubMirrorSink())
        worker = WorkerLoop(
            role="worker-submissions",
            worker_id="pg-worker",
            tubes=ROLE_TUBES["worker-submissions"],
            queue=queue,
            deps=WorkerDeps(store=store, detector=DuplicateDetector(store=store), events=events),
            reserve_timeout_ms=0,
        )
        try:
            single = await enqueue_submission(
                SubmitSingleCommand(
                    source=Source.FORM,
                    row=SubmitRowCommand(operation="create", data=student("pg@example.com")),
                ),
                store=store,
                queue=queue,
            )
            batch = await enqueue_batch(
                SubmitBatchCommand(
                    source=Source.API,
                    rows=(
                        SubmitRowCommand(operation="create", data=student("PG@example.com")),
                        SubmitRowCommand(operation="create", data=student("other@example.com")),
                    ),
                ),
                queue=queue,
            )
            assert await drain(worker) == 2

            first = await store.get_submission(submission_id=single.submission_ids[0])
            dup = await store.get_submission(submission_id=batch.submission_ids[0])
            other = await store.get_submission(submission_id=batch.submission_ids[1])
            assert first is not None and dup is not None and other is not None
            assert first.status == SubmissionStatus.COMPLETED
            assert dup.status == SubmissionStatus.FAILED
            assert dup.duplicate_of == first.submission_id
            assert other.status == SubmissionStatus.COMPLETED
            assert other.batch_id == batch.item_id

            assert await store.count_submissions(status=SubmissionStatus.COMPLETED) == 2
            recent = await notifications.list_recent(limit=10)
            assert recent[0].is_important is True
            assert await notifications.unread_count() == len(recent)

            stats = await queue.stats(tube=tube_for(Source.API))
            assert (stats.ready, stats.reserved, stats.buried) == (0, 0, 0)
        finally:
            await manager.shutdown()

    asyncio.run(_run())
