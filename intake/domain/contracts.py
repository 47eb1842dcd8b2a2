from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from intake.domain.models import (
    NewSubmission,
    NotificationSnapshot,
    PersonSnapshot,
    QueueStats,
    ReservedJob,
    SubmissionListQuery,
    SubmissionPatch,
    SubmissionSnapshot,
    SubmissionStatus,
)

RESERVE_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"


@runtime_checkable
class RecordStore(Protocol):
    """Document store holding submission and person records.

    Submission writes go through transition_submission so that every status
    change is checked against the lifecycle map and, for terminal writes,
    against the worker currently holding the row.
    """

    async def insert_submission(self, *, submission: NewSubmission) -> SubmissionSnapshot: ...

    async def get_submission(self, *, submission_id: str) -> SubmissionSnapshot | None: ...

    async def list_submissions(self, *, query: SubmissionListQuery) -> list[SubmissionSnapshot]: ...

    async def count_submissions(self, *, status: SubmissionStatus | None = None) -> int: ...

    async def find_completed_creates_by_email(
        self,
        *,
        email: str,
        exclude_submission_id: str | None = None,
    ) -> list[SubmissionSnapshot]: ...

    async def transition_submission(
        self,
        *,
        submission_id: str,
        from_state: SubmissionStatus,
        patch: SubmissionPatch,
        worker_id: str | None = None,
        operator: bool = False,
    ) -> SubmissionSnapshot: ...

    async def insert_person(
        self,
        *,
        person_id: str,
        email: str,
        data: dict[str, object],
        submission_id: str | None,
    ) -> PersonSnapshot: ...

    async def get_person(self, *, person_id: str) -> PersonSnapshot | None: ...

    async def find_person_by_email(self, *, email: str) -> PersonSnapshot | None: ...

    async def update_person(self, *, person_id: str, email: str, data: dict[str, object]) -> PersonSnapshot: ...

    async def delete_person(self, *, person_id: str) -> bool: ...


@runtime_checkable
class WorkQueue(Protocol):
    """Multi-tube broker with reserve-with-lease semantics.

    A reservation that is neither deleted, released nor buried before its
    lease runs out becomes eligible for redelivery to another worker.
    """

    async def put(self, *, tube: str, payload: bytes, delay_seconds: int = 0) -> str: ...

    async def reserve(
        self,
        *,
        tubes: tuple[str, ...],
        worker_id: str,
        timeout_seconds: float,
        ttr_seconds: int,
    ) -> ReservedJob | None: ...

    async def touch(self, *, job: ReservedJob, ttr_seconds: int) -> bool: ...

    async def delete(self, *, job: ReservedJob) -> None: ...

    async def release(self, *, job: ReservedJob, delay_seconds: int = 0) -> None: ...

    async def bury(self, *, job: ReservedJob, reason: str) -> None: ...

    async def kick(self, *, tube: str, bound: int = 100) -> int: ...

    async def stats(self, *, tube: str) -> QueueStats: ...


@runtime_checkable
class CounterStore(Protocol):
    """Fast key/value cache with atomic increments, ranked sets and per-key expiry."""

    async def increment(self, key: str, amount: int = 1) -> int: ...

    async def get(self, key: str, default: object = None) -> object: ...

    async def put(self, key: str, value: object, ttl_seconds: int | None = None) -> None: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    async def increment_ranked(
        self,
        key: str,
        member: str,
        amount: int = 1,
        *,
        limit: int,
        ttl_seconds: int | None = None,
    ) -> None: ...

    async def top_ranked(self, key: str, count: int) -> list[tuple[str, int]]: ...


@runtime_checkable
class NotificationStore(Protocol):
    async def create(self, *, notification: NotificationSnapshot) -> None: ...

    async def list_recent(self, *, limit: int = 10, now: datetime | None = None) -> list[NotificationSnapshot]: ...

    async def unread_count(self, *, now: datetime | None = None) -> int: ...

    async def mark_read(self, *, notification_id: str) -> bool: ...

    async def mark_all_read(self, *, now: datetime | None = None) -> int: ...

    async def delete(self, *, notification_id: str) -> bool: ...

    async def clear_read(self) -> int: ...


@runtime_checkable
class MirrorSink(Protocol):
    async def publish(self, *, payload: str) -> None: ...
