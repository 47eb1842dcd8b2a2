from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from intake.domain.errors import DomainInvariantError
from intake.domain.ids import new_job_id
from intake.domain.lifecycle import TERMINAL_STATES, ensure_transition
from intake.domain.models import (
    NewSubmission,
    NotificationSnapshot,
    Operation,
    PersonSnapshot,
    QueueStats,
    ReservedJob,
    SubmissionListQuery,
    SubmissionPatch,
    SubmissionSnapshot,
    SubmissionStatus,
)
from intake.domain.validation import normalize_email

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class InMemoryRecordStore:
    """Non-network record store with deterministic behavior for skeleton mode."""

    clock: Clock = _utcnow
    submissions: dict[str, SubmissionSnapshot] = field(default_factory=dict)
    persons: dict[str, PersonSnapshot] = field(default_factory=dict)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    async def insert_submission(self, *, submission: NewSubmission) -> SubmissionSnapshot:
        if submission.submission_id in self.submissions:
            raise DomainInvariantError(f"submission already exists: {submission.submission_id}")
        now = self.clock()
        snapshot = SubmissionSnapshot(
            submission_id=submission.submission_id,
            operation=submission.operation,
            source=submission.source,
            status=submission.status,
            payload=dict(submission.payload),
            target_id=submission.target_id,
            error_message=submission.error_message,
            error_code=submission.error_code,
            csv_row=submission.csv_row,
            batch_id=submission.batch_id,
            file_name=submission.file_name,
            ip_address=submission.ip_address,
            user_agent=submission.user_agent,
            created_at=now,
            updated_at=now,
            processed_at=now if submission.status in TERMINAL_STATES else None,
        )
        self.submissions[snapshot.submission_id] = snapshot
        return snapshot

    async def get_submission(self, *, submission_id: str) -> SubmissionSnapshot | None:
        return self.submissions.get(submission_id)

    async def list_submissions(self, *, query: SubmissionListQuery) -> list[SubmissionSnapshot]:
        email = normalize_email(query.email) if query.email else None
        items: list[SubmissionSnapshot] = []
        for row in self.submissions.values():
            if query.statuses is not None and row.status not in set(query.statuses):
                continue
            if query.operation is not None and row.operation != query.operation:
                continue
            if query.source is not None and row.source != query.source:
                continue
            if query.batch_id is not None and row.batch_id != query.batch_id:
                continue
            if email is not None and (row.email is None or normalize_email(row.email) != email):
                continue
            if query.has_error is True and row.error_code is None:
                continue
            if query.has_error is False and row.error_code is not None:
                continue
            items.append(row)

        items.sort(key=lambda item: (item.created_at or self.clock(), item.submission_id), reverse=True)
        return items[query.offset : query.offset + query.limit]

    async def count_submissions(self, *, status: SubmissionStatus | None = None) -> int:
        return sum(1 for row in self.submissions.values() if status is None or row.status == status)

    async def find_completed_creates_by_email(
        self,
        *,
        email: str,
        exclude_submission_id: str | None = None,
    ) -> list[SubmissionSnapshot]:
        normalized = normalize_email(email)
        matches = [
            row
            for row in self.submissions.values()
            if row.operation == Operation.CREATE
            and row.status == SubmissionStatus.COMPLETED
            and row.submission_id != exclude_submission_id
            and row.email is not None
            and normalize_email(row.email) == normalized
        ]
        matches.sort(key=lambda item: (item.created_at or self.clock(), item.submission_id))
        return matches

    async def transition_submission(
        self,
        *,
        submission_id: str,
        from_state: SubmissionStatus,
        patch: SubmissionPatch,
        worker_id: str | None = None,
        operator: bool = False,
    ) -> SubmissionSnapshot:
        row = self.submissions.get(submission_id)
        if row is None:
            raise DomainInvariantError(f"submission is not found: {submission_id}")
        if row.status != from_state:
            raise DomainInvariantError(
                f"stale transition for {submission_id}: expected {from_state}, found {row.status}"
            )
        ensure_transition(from_state, patch.status, operator=operator)
        if (
            from_state == SubmissionStatus.PROCESSING
            and patch.status in TERMINAL_STATES
            and worker_id is not None
            and row.claimed_by != worker_id
        ):
            raise DomainInvariantError("claim ownership is stale")

        updated = _apply_patch(row, patch, now=self.clock())
        self.submissions[submission_id] = updated
        self.transitions.append((submission_id, from_state.value, patch.status.value))
        return updated

    async def insert_person(
        self,
        *,
        person_id: str,
        email: str,
        data: dict[str, object],
        submission_id: str | None,
    ) -> PersonSnapshot:
        now = self.clock()
        person = PersonSnapshot(
            person_id=person_id,
            email=normalize_email(email),
            data=dict(data),
            submission_id=submission_id,
            created_at=now,
            updated_at=now,
        )
        self.persons[person_id] = person
        return person

    async def get_person(self, *, person_id: str) -> PersonSnapshot | None:
        return self.persons.get(person_id)

    async def find_person_by_email(self, *, email: str) -> PersonSnapshot | None:
        normalized = normalize_email(email)
        for person in self.persons.values():
            if person.email == normalized:
                return person
        return None

    async def update_person(self, *, person_id: str, email: str, data: dict[str, object]) -> PersonSnapshot:
        person = self.persons.get(person_id)
        if person is None:
            raise DomainInvariantError(f"person is not found: {person_id}")
        updated = replace(
            person,
            email=normalize_email(email),
            data={**person.data, **data},
            updated_at=self.clock(),
        )
        self.persons[person_id] = updated
        return updated

    async def delete_person(self, *, person_id: str) -> bool:
        return self.persons.pop(person_id, None) is not None


def _apply_patch(row: SubmissionSnapshot, patch: SubmissionPatch, *, now: datetime) -> SubmissionSnapshot:
    changes: dict[str, object] = {"status": patch.status, "updated_at": now}
    if patch.payload is not None:
        changes["payload"] = dict(patch.payload)
    if patch.clear_error:
        changes.update(error_message=None, error_code=None, duplicate_of=None)
    if patch.error_message is not None:
        changes["error_message"] = patch.error_message
    if patch.error_code is not None:
        changes["error_code"] = patch.error_code
    if patch.duplicate_of is not None:
        changes["duplicate_of"] = patch.duplicate_of
    if patch.person_id is not None:
        changes["person_id"] = patch.person_id
    if patch.count_attempt:
        changes["attempts"] = row.attempts + 1
    if patch.status == SubmissionStatus.PROCESSING:
        changes["claimed_by"] = patch.claimed_by
    else:
        changes["claimed_by"] = None
    if patch.mark_processed:
        changes["processed_at"] = now
    if patch.status == SubmissionStatus.QUEUED:
        changes["processed_at"] = None
    return replace(row, **changes)


@dataclass
class _Job:
    job_id: str
    tube: str
    payload: bytes
    seq: int
    state: str = "ready"
    ready_at: datetime | None = None
    reserves: int = 0
    reserved_by: str | None = None
    lease_expires_at: datetime | None = None
    bury_reason: str | None = None


@dataclass
class InMemoryWorkQueue:
    """Single-process broker with beanstalk-style tubes and reservation leases."""

    clock: Clock = _utcnow
    poll_interval_seconds: float = 0.01
    jobs: dict[str, _Job] = field(default_factory=dict)
    next_seq: int = 1

    async def put(self, *, tube: str, payload: bytes, delay_seconds: int = 0) -> str:
        job_id = new_job_id()
        job = _Job(job_id=job_id, tube=tube, payload=payload, seq=self.next_seq)
        self.next_seq += 1
        if delay_seconds > 0:
            job.state = "delayed"
            job.ready_at = self.clock() + timedelta(seconds=delay_seconds)
        self.jobs[job_id] = job
        return job_id

    async def reserve(
        self,
        *,
        tubes: tuple[str, ...],
        worker_id: str,
        timeout_seconds: float,
        ttr_seconds: int,
    ) -> ReservedJob | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout_seconds, 0)
        while True:
            job = self._next_ready(tubes)
            if job is not None:
                now = self.clock()
                job.state = "reserved"
                job.reserves += 1
                job.reserved_by = worker_id
                job.lease_expires_at = now + timedelta(seconds=ttr_seconds)
                return ReservedJob(
                    job_id=job.job_id,
                    tube=job.tube,
                    payload=job.payload,
                    reserves=job.reserves,
                    worker_id=worker_id,
                    lease_expires_at=job.lease_expires_at,
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def touch(self, *, job: ReservedJob, ttr_seconds: int) -> bool:
        row = self._owned(job)
        if row is None:
            return False
        row.lease_expires_at = self.clock() + timedelta(seconds=ttr_seconds)
        return True

    async def delete(self, *, job: ReservedJob) -> None:
        self._require_owned(job)
        del self.jobs[job.job_id]

    async def release(self, *, job: ReservedJob, delay_seconds: int = 0) -> None:
        row = self._require_owned(job)
        row.reserved_by = None
        row.lease_expires_at = None
        if delay_seconds > 0:
            row.state = "delayed"
            row.ready_at = self.clock() + timedelta(seconds=delay_seconds)
        else:
            row.state = "ready"
            row.ready_at = None

    async def bury(self, *, job: ReservedJob, reason: str) -> None:
        row = self._require_owned(job)
        row.state = "buried"
        row.bury_reason = reason
        row.reserved_by = None
        row.lease_expires_at = None

    async def kick(self, *, tube: str, bound: int = 100) -> int:
        buried = sorted(
            (job for job in self.jobs.values() if job.tube == tube and job.state == "buried"),
            key=lambda job: job.seq,
        )
        for job in buried[:bound]:
            job.state = "ready"
            job.bury_reason = None
        return min(len(buried), bound)

    async def stats(self, *, tube: str) -> QueueStats:
        self._promote()
        counts = {"ready": 0, "delayed": 0, "reserved": 0, "buried": 0}
        for job in self.jobs.values():
            if job.tube == tube:
                counts[job.state] += 1
        return QueueStats(tube=tube, **counts)

    def _promote(self) -> None:
        now = self.clock()
        for job in self.jobs.values():
            if job.state == "delayed" and job.ready_at is not None and job.ready_at <= now:
                job.state = "ready"
                job.ready_at = None
            elif job.state == "reserved" and job.lease_expires_at is not None and job.lease_expires_at <= now:
                # Lease ran out without delete/release/bury: redeliver.
                job.state = "ready"
                job.reserved_by = None
                job.lease_expires_at = None

    def _next_ready(self, tubes: tuple[str, ...]) -> _Job | None:
        self._promote()
        ready = [job for job in self.jobs.values() if job.state == "ready" and job.tube in tubes]
        if not ready:
            return None
        return min(ready, key=lambda job: job.seq)

    def _owned(self, job: ReservedJob) -> _Job | None:
        row = self.jobs.get(job.job_id)
        if (
            row is None
            or row.state != "reserved"
            or row.reserved_by != job.worker_id
            or row.reserves != job.reserves
            or row.lease_expires_at is None
            or row.lease_expires_at <= self.clock()
        ):
            return None
        return row

    def _require_owned(self, job: ReservedJob) -> _Job:
        row = self._owned(job)
        if row is None:
            raise DomainInvariantError("claim ownership is stale")
        return row


@dataclass
class InMemoryNotificationStore:
    clock: Clock = _utcnow
    notifications: list[NotificationSnapshot] = field(default_factory=list)

    async def create(self, *, notification: NotificationSnapshot) -> None:
        if notification.created_at is None:
            notification = replace(notification, created_at=self.clock())
        self.notifications.append(notification)

    async def list_recent(self, *, limit: int = 10, now: datetime | None = None) -> list[NotificationSnapshot]:
        active = self._active(now or self.clock())
        # Stable sorts: newest first, then important ones ahead of the rest.
        active.sort(key=lambda item: item.created_at or datetime.min.replace(tzinfo=UTC), reverse=True)
        active.sort(key=lambda item: item.is_important, reverse=True)
        return active[:limit]

    async def unread_count(self, *, now: datetime | None = None) -> int:
        return sum(1 for item in self._active(now or self.clock()) if not item.is_read)

    async def mark_read(self, *, notification_id: str) -> bool:
        for index, item in enumerate(self.notifications):
            if item.notification_id == notification_id:
                self.notifications[index] = replace(item, is_read=True)
                return True
        return False

    async def mark_all_read(self, *, now: datetime | None = None) -> int:
        active = {item.notification_id for item in self._active(now or self.clock()) if not item.is_read}
        self.notifications = [
            replace(item, is_read=True) if item.notification_id in active else item for item in self.notifications
        ]
        return len(active)

    async def delete(self, *, notification_id: str) -> bool:
        before = len(self.notifications)
        self.notifications = [item for item in self.notifications if item.notification_id != notification_id]
        return len(self.notifications) < before

    async def clear_read(self) -> int:
        before = len(self.notifications)
        self.notifications = [item for item in self.notifications if not item.is_read]
        return before - len(self.notifications)

    def _active(self, now: datetime) -> list[NotificationSnapshot]:
        return [item for item in self.notifications if item.expires_at is None or item.expires_at > now]
