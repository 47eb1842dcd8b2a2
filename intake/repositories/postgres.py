from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
import importlib
import json
from typing import Any

from intake.domain.errors import DomainDependencyError, DomainInvariantError
from intake.domain.ids import new_job_id
from intake.domain.lifecycle import ensure_transition
from intake.domain.models import (
    NewSubmission,
    NotificationSnapshot,
    Operation,
    PersonSnapshot,
    QueueStats,
    ReservedJob,
    Source,
    SubmissionListQuery,
    SubmissionPatch,
    SubmissionSnapshot,
    SubmissionStatus,
)
from intake.domain.validation import normalize_email
from intake.repositories.sql_loader import load_sql

asyncpg_module = importlib.import_module("asyncpg")


SQL_INSERT_SUBMISSION = load_sql("insert_submission.sql")
SQL_GET_SUBMISSION = load_sql("get_submission.sql")
SQL_COUNT_SUBMISSIONS = load_sql("count_submissions.sql")
SQL_FIND_COMPLETED_CREATES = load_sql("find_completed_creates_by_email.sql")
SQL_TRANSITION_SUBMISSION = load_sql("transition_submission.sql")
SQL_INSERT_PERSON = load_sql("insert_person.sql")
SQL_GET_PERSON = load_sql("get_person.sql")
SQL_FIND_PERSON_BY_EMAIL = load_sql("find_person_by_email.sql")
SQL_UPDATE_PERSON = load_sql("update_person.sql")
SQL_DELETE_PERSON = load_sql("delete_person.sql")
SQL_INSERT_NOTIFICATION = load_sql("insert_notification.sql")
SQL_LIST_RECENT_NOTIFICATIONS = load_sql("list_recent_notifications.sql")
SQL_COUNT_UNREAD_NOTIFICATIONS = load_sql("count_unread_notifications.sql")
SQL_MARK_NOTIFICATION_READ = load_sql("mark_notification_read.sql")
SQL_MARK_ALL_NOTIFICATIONS_READ = load_sql("mark_all_notifications_read.sql")
SQL_DELETE_NOTIFICATION = load_sql("delete_notification.sql")
SQL_CLEAR_READ_NOTIFICATIONS = load_sql("clear_read_notifications.sql")
SQL_QUEUE_PUT = load_sql("queue_put.sql")
SQL_QUEUE_RESERVE = load_sql("queue_reserve.sql")
SQL_QUEUE_TOUCH = load_sql("queue_touch.sql")
SQL_QUEUE_DELETE = load_sql("queue_delete.sql")
SQL_QUEUE_RELEASE = load_sql("queue_release.sql")
SQL_QUEUE_BURY = load_sql("queue_bury.sql")
SQL_QUEUE_KICK = load_sql("queue_kick.sql")
SQL_QUEUE_STATS = load_sql("queue_stats.sql")

SUBMISSION_COLUMNS = (
    "id, operation, source, status, target_id, payload, error_message, error_code, duplicate_of, person_id, "
    "csv_row, batch_id, file_name, claimed_by, attempts, ip_address, user_agent, created_at, updated_at, processed_at"
)

# Connection-level failures surface as DomainDependencyError so callers can retry.
_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    asyncpg_module.PostgresConnectionError,
    asyncpg_module.InterfaceError,
    asyncpg_module.CannotConnectNowError,
)


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 5
    command_timeout_seconds: float = 10.0

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout_seconds,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        if self.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            raise DomainDependencyError(f"record store unavailable: {exc}") from exc


@dataclass
class PostgresRecordStore:
    pool_manager: AsyncpgPoolManager

    async def insert_submission(self, *, submission: NewSubmission) -> SubmissionSnapshot:
        async with self.pool_manager.connection() as conn:
            try:
                row = await conn.fetchrow(
                    SQL_INSERT_SUBMISSION,
                    submission.submission_id,
                    submission.operation.value,
                    submission.source.value,
                    submission.status.value,
                    submission.target_id,
                    dict(submission.payload),
                    submission.error_message,
                    submission.error_code,
                    submission.csv_row,
                    submission.batch_id,
                    submission.file_name,
                    submission.ip_address,
                    submission.user_agent,
                )
            except Exception as exc:
                if _is_unique_violation(exc):
                    raise DomainInvariantError(f"submission already exists: {submission.submission_id}") from exc
                raise
        if row is None:
            raise DomainInvariantError("failed to create submission")
        return _submission_from_row(row)

    async def get_submission(self, *, submission_id: str) -> SubmissionSnapshot | None:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_GET_SUBMISSION, submission_id)
        if row is None:
            return None
        return _submission_from_row(row)

    async def list_submissions(self, *, query: SubmissionListQuery) -> list[SubmissionSnapshot]:
        where_parts: list[str] = []
        args: list[object] = []

        if query.statuses:
            args.append([status.value for status in query.statuses])
            where_parts.append(f"status = ANY(${len(args)}::text[])")
        if query.operation is not None:
            args.append(query.operation.value)
            where_parts.append(f"operation = ${len(args)}")
        if query.source is not None:
            args.append(query.source.value)
            where_parts.append(f"source = ${len(args)}")
        if query.batch_id is not None:
            args.append(query.batch_id)
            where_parts.append(f"batch_id = ${len(args)}")
        if query.email is not None:
            args.append(normalize_email(query.email))
            where_parts.append(f"email_normalized = ${len(args)}")
        if query.has_error is True:
            where_parts.append("error_code IS NOT NULL")
        elif query.has_error is False:
            where_parts.append("error_code IS NULL")

        where_sql = f"WHERE {' AND '.join(where_parts)}" if where_parts else ""
        args.extend([query.limit, query.offset])
        sql = (
            f"SELECT {SUBMISSION_COLUMNS} FROM submission_records {where_sql} "
            f"ORDER BY created_at DESC, id DESC "
            f"LIMIT ${len(args) - 1} OFFSET ${len(args)}"
        )
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(sql, *args)
        return [_submission_from_row(row) for row in rows]

    async def count_submissions(self, *, status: SubmissionStatus | None = None) -> int:
        async with self.pool_manager.connection() as conn:
            value = await conn.fetchval(SQL_COUNT_SUBMISSIONS, status.value if status is not None else None)
        return int(value or 0)

    async def find_completed_creates_by_email(
        self,
        *,
        email: str,
        exclude_submission_id: str | None = None,
    ) -> list[SubmissionSnapshot]:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_FIND_COMPLETED_CREATES, normalize_email(email), exclude_submission_id)
        return [_submission_from_row(row) for row in rows]

    async def transition_submission(
        self,
        *,
        submission_id: str,
        from_state: SubmissionStatus,
        patch: SubmissionPatch,
        worker_id: str | None = None,
        operator: bool = False,
    ) -> SubmissionSnapshot:
        ensure_transition(from_state, patch.status, operator=operator)
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(
                SQL_TRANSITION_SUBMISSION,
                submission_id,
                from_state.value,
                patch.status.value,
                dict(patch.payload) if patch.payload is not None else None,
                patch.clear_error,
                patch.error_message,
                patch.error_code,
                patch.duplicate_of,
                patch.person_id,
                patch.claimed_by if patch.status == SubmissionStatus.PROCESSING else None,
                patch.count_attempt,
                patch.mark_processed,
                worker_id,
            )
            if row is not None:
                return _submission_from_row(row)

            current = await conn.fetchrow(SQL_GET_SUBMISSION, submission_id)
        if current is None:
            raise DomainInvariantError(f"submission is not found: {submission_id}")
        if current["status"] != from_state.value:
            raise DomainInvariantError(
                f"stale transition for {submission_id}: expected {from_state}, found {current['status']}"
            )
        raise DomainInvariantError("claim ownership is stale")

    async def insert_person(
        self,
        *,
        person_id: str,
        email: str,
        data: dict[str, object],
        submission_id: str | None,
    ) -> PersonSnapshot:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_INSERT_PERSON, person_id, normalize_email(email), dict(data), submission_id)
        if row is None:
            raise DomainInvariantError("failed to create person")
        return _person_from_row(row)

    async def get_person(self, *, person_id: str) -> PersonSnapshot | None:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_GET_PERSON, person_id)
        return _person_from_row(row) if row is not None else None

    async def find_person_by_email(self, *, email: str) -> PersonSnapshot | None:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_FIND_PERSON_BY_EMAIL, normalize_email(email))
        return _person_from_row(row) if row is not None else None

    async def update_person(self, *, person_id: str, email: str, data: dict[str, object]) -> PersonSnapshot:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_UPDATE_PERSON, person_id, normalize_email(email), dict(data))
        if row is None:
            raise DomainInvariantError(f"person is not found: {person_id}")
        return _person_from_row(row)

    async def delete_person(self, *, person_id: str) -> bool:
        async with self.pool_manager.connection() as conn:
            deleted = await conn.fetchval(SQL_DELETE_PERSON, person_id)
        return deleted is not None


@dataclass
class PostgresWorkQueue:
    """Work queue on a Postgres table; reservations use FOR UPDATE SKIP LOCKED."""

    pool_manager: AsyncpgPoolManager
    poll_interval_seconds: float = 0.2

    async def put(self, *, tube: str, payload: bytes, delay_seconds: int = 0) -> str:
        async with self.pool_manager.connection() as conn:
            job_id = await conn.fetchval(SQL_QUEUE_PUT, new_job_id(), tube, payload, max(delay_seconds, 0))
        return str(job_id)

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
            async with self.pool_manager.connection() as conn:
                row = await conn.fetchrow(SQL_QUEUE_RESERVE, list(tubes), worker_id, ttr_seconds)
            if row is not None:
                return ReservedJob(
                    job_id=row["id"],
                    tube=row["tube"],
                    payload=bytes(row["payload"]),
                    reserves=int(row["reserves"]),
                    worker_id=row["reserved_by"],
                    lease_expires_at=row["lease_expires_at"],
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def touch(self, *, job: ReservedJob, ttr_seconds: int) -> bool:
        async with self.pool_manager.connection() as conn:
            expires_at = await conn.fetchval(SQL_QUEUE_TOUCH, job.job_id, job.worker_id, job.reserves, ttr_seconds)
        return expires_at is not None

    async def delete(self, *, job: ReservedJob) -> None:
        async with self.pool_manager.connection() as conn:
            deleted = await conn.fetchval(SQL_QUEUE_DELETE, job.job_id, job.worker_id, job.reserves)
        if deleted is None:
            raise DomainInvariantError("claim ownership is stale")

    async def release(self, *, job: ReservedJob, delay_seconds: int = 0) -> None:
        async with self.pool_manager.connection() as conn:
            released = await conn.fetchval(
                SQL_QUEUE_RELEASE,
                job.job_id,
                job.worker_id,
                job.reserves,
                max(delay_seconds, 0),
            )
        if released is None:
            raise DomainInvariantError("claim ownership is stale")

    async def bury(self, *, job: ReservedJob, reason: str) -> None:
        async with self.pool_manager.connection() as conn:
            buried = await conn.fetchval(SQL_QUEUE_BURY, job.job_id, job.worker_id, job.reserves, reason)
        if buried is None:
            raise DomainInvariantError("claim ownership is stale")

    async def kick(self, *, tube: str, bound: int = 100) -> int:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_QUEUE_KICK, tube, bound)
        return len(rows)

    async def stats(self, *, tube: str) -> QueueStats:
        async with self.pool_manager.connection() as conn:
            row = await conn.fetchrow(SQL_QUEUE_STATS, tube)
        # An expired reservation is eligible for redelivery, so it counts as ready.
        return QueueStats(
            tube=tube,
            ready=int(row["ready"]) + int(row["reserved_expired"]),
            delayed=int(row["delayed"]),
            reserved=int(row["reserved_live"]),
            buried=int(row["buried"]),
        )


@dataclass
class PostgresNotificationStore:
    pool_manager: AsyncpgPoolManager

    async def create(self, *, notification: NotificationSnapshot) -> None:
        async with self.pool_manager.connection() as conn:
            await conn.execute(
                SQL_INSERT_NOTIFICATION,
                notification.notification_id,
                notification.type,
                notification.title,
                notification.message,
                notification.icon,
                notification.color,
                notification.is_important,
                notification.is_read,
                notification.related_type,
                notification.related_id,
                dict(notification.data),
                notification.expires_at,
                notification.created_at,
            )

    async def list_recent(self, *, limit: int = 10, now: datetime | None = None) -> list[NotificationSnapshot]:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_LIST_RECENT_NOTIFICATIONS, now or datetime.now(tz=UTC), limit)
        return [
            NotificationSnapshot(
                notification_id=row["id"],
                type=row["type"],
                title=row["title"],
                message=row["message"],
                icon=row["icon"],
                color=row["color"],
                is_important=bool(row["is_important"]),
                is_read=bool(row["is_read"]),
                related_type=row["related_type"],
                related_id=row["related_id"],
                data=_json_object(row["data"]),
                expires_at=row["expires_at"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def unread_count(self, *, now: datetime | None = None) -> int:
        async with self.pool_manager.connection() as conn:
            value = await conn.fetchval(SQL_COUNT_UNREAD_NOTIFICATIONS, now or datetime.now(tz=UTC))
        return int(value or 0)

    async def mark_read(self, *, notification_id: str) -> bool:
        async with self.pool_manager.connection() as conn:
            updated = await conn.fetchval(SQL_MARK_NOTIFICATION_READ, notification_id)
        return updated is not None

    async def mark_all_read(self, *, now: datetime | None = None) -> int:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_MARK_ALL_NOTIFICATIONS_READ, now or datetime.now(tz=UTC))
        return len(rows)

    async def delete(self, *, notification_id: str) -> bool:
        async with self.pool_manager.connection() as conn:
            deleted = await conn.fetchval(SQL_DELETE_NOTIFICATION, notification_id)
        return deleted is not None

    async def clear_read(self) -> int:
        async with self.pool_manager.connection() as conn:
            rows = await conn.fetch(SQL_CLEAR_READ_NOTIFICATIONS)
        return len(rows)


def _submission_from_row(row: Any) -> SubmissionSnapshot:
    return SubmissionSnapshot(
        submission_id=row["id"],
        operation=Operation(row["operation"]),
        source=Source(row["source"]),
        status=SubmissionStatus(row["status"]),
        payload=_json_object(row["payload"]),
        target_id=row["target_id"],
        error_message=row["error_message"],
        error_code=row["error_code"],
        duplicate_of=row["duplicate_of"],
        person_id=row["person_id"],
        csv_row=row["csv_row"],
        batch_id=row["batch_id"],
        file_name=row["file_name"],
        claimed_by=row["claimed_by"],
        attempts=int(row["attempts"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        processed_at=row["processed_at"],
    )


def _person_from_row(row: Any) -> PersonSnapshot:
    return PersonSnapshot(
        person_id=row["id"],
        email=row["email"],
        data=_json_object(row["data"]),
        submission_id=row["submission_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}
