from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from intake.domain.errors import DomainInvariantError
from intake.repositories.stub import InMemoryWorkQueue


@dataclass
class _Clock:
    now: datetime = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


async def _reserve(queue: InMemoryWorkQueue, worker_id: str, tubes: tuple[str, ...] = ("form_submissions",)):
    return await queue.reserve(tubes=tubes, worker_id=worker_id, timeout_seconds=0, ttr_seconds=30)


@pytest.mark.unit
def test_reserve_is_fifo_across_tubes_and_empty_reserve_times_out() -> None:
    queue = InMemoryWorkQueue()

    async def _run() -> None:
        assert await _reserve(queue, "w-1") is None
        await queue.put(tube="api_submissions", payload=b"first")
        await queue.put(tube="form_submissions", payload=b"second")
        await queue.put(tube="csv_jobs", payload=b"other")

        tubes = ("form_submissions", "api_submissions")
        first = await _reserve(queue, "w-1", tubes)
        second = await _reserve(queue, "w-2", tubes)
        assert first is not None and second is not None
        assert (first.payload, second.payload) == (b"first", b"second")
        assert await _reserve(queue, "w-3", tubes) is None

    asyncio.run(_run())


@pytest.mark.unit
def test_expired_lease_is_redelivered_and_old_holder_loses_ownership() -> None:
    clock = _Clock()
    queue = InMemoryWorkQueue(clock=clock)

    async def _run() -> None:
        await queue.put(tube="form_submissions", payload=b"job")
        first = await _reserve(queue, "w-1")
        assert first is not None
        assert await _reserve(queue, "w-2") is None

        clock.advance(31)
        second = await _reserve(queue, "w-2")
        assert second is not None
        assert second.job_id == first.job_id
        assert second.reserves == 2

        assert await queue.touch(job=first, ttr_seconds=30) is False
        with pytest.raises(DomainInvariantError, match="claim ownership is stale"):
            await queue.delete(job=first)

        await queue.delete(job=second)
        stats = await queue.stats(tube="form_submissions")
        assert (stats.ready, stats.reserved, stats.delayed, stats.buried) == (0, 0, 0, 0)

    asyncio.run(_run())


@pytest.mark.unit
def test_touch_extends_the_lease() -> None:
    clock = _Clock()
    queue = InMemoryWorkQueue(clock=clock)

    async def _run() -> None:
        await queue.put(tube="form_submissions", payload=b"job")
        job = await _reserve(queue, "w-1")
        assert job is not None
        clock.advance(20)
        assert await queue.touch(job=job, ttr_seconds=30) is True
        clock.advance(20)
        assert await _reserve(queue, "w-2") is None
        await queue.delete(job=job)

    asyncio.run(_run())


@pytest.mark.unit
def test_release_with_delay_then_bury_and_kick() -> None:
    clock = _Clock()
    queue = InMemoryWorkQueue(clock=clock)

    async def _run() -> None:
        await queue.put(tube="csv_jobs", payload=b"job")
        job = await _reserve(queue, "w-1", ("csv_jobs",))
        assert job is not None

        await queue.release(job=job, delay_seconds=10)
        stats = await queue.stats(tube="csv_jobs")
        assert (stats.ready, stats.delayed) == (0, 1)
        assert await _reserve(queue, "w-1", ("csv_jobs",)) is None

        clock.advance(10)
        retried = await _reserve(queue, "w-1", ("csv_jobs",))
        assert retried is not None and retried.reserves == 2

        await queue.bury(job=retried, reason="retries exhausted")
        assert (await queue.stats(tube="csv_jobs")).buried == 1
        assert await _reserve(queue, "w-1", ("csv_jobs",)) is None

        assert await queue.kick(tube="csv_jobs", bound=5) == 1
        assert (await queue.stats(tube="csv_jobs")).ready == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_delayed_put_is_not_reserved_early() -> None:
    clock = _Clock()
    queue = InMemoryWorkQueue(clock=clock)

    async def _run() -> None:
        await queue.put(tube="form_submissions", payload=b"later", delay_seconds=5)
        assert await _reserve(queue, "w-1") is None
        clock.advance(5)
        assert await _reserve(queue, "w-1") is not None

    asyncio.run(_run())
