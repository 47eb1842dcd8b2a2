from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from intake.domain.contracts import CounterStore
from intake.domain.events import (
    BatchCompleted,
    DomainEvent,
    DuplicateDetected,
    SubmissionProcessed,
    SubmissionRequeued,
)
from intake.domain.models import Operation, Source, SubmissionStatus

logger = logging.getLogger("worker")

DAY_SECONDS = 24 * 60 * 60
HOURLY_TTL_SECONDS = 7 * DAY_SECONDS
DAILY_TTL_SECONDS = 30 * DAY_SECONDS
DUPLICATE_ATTEMPT_TTL_SECONDS = 7 * DAY_SECONDS
TOP_DUPLICATES_KEY = "top_duplicate_emails"
TOP_DUPLICATES_LIMIT = 100


def status_key(status: str) -> str:
    return f"form_submissions_count_{status}"


def operation_key(operation: str) -> str:
    return f"form_submissions_operation_{operation}"


def source_key(source: str) -> str:
    return f"form_submissions_source_{source}"


def hourly_key(moment: datetime) -> str:
    return f"form_submissions_hourly_{moment.strftime('%Y-%m-%d-%H')}"


def daily_key(moment: datetime) -> str:
    return f"form_submissions_daily_{moment.strftime('%Y-%m-%d')}"


def duplicate_daily_key(moment: datetime) -> str:
    return f"duplicate_emails_daily_{moment.strftime('%Y-%m-%d')}"


def duplicate_source_key(source: str) -> str:
    return f"duplicate_emails_source_{source}"


def duplicate_attempts_key(email: str) -> str:
    digest = hashlib.md5(email.lower().encode("utf-8")).hexdigest()
    return f"duplicate_attempts_email_{digest}"


def csv_completions_daily_key(moment: datetime) -> str:
    return f"csv_completions_daily_{moment.strftime('%Y-%m-%d')}"


@dataclass(frozen=True)
class StatisticsAggregator:
    counters: CounterStore
    name: str = "statistics"

    async def handle(self, event: DomainEvent) -> None:
        match event:
            case SubmissionProcessed():
                await self._record_processed(event)
            case DuplicateDetected():
                await self._record_duplicate(event)
            case BatchCompleted():
                key = csv_completions_daily_key(event.occurred_at)
                await self.counters.increment(key)
                await self.counters.expire(key, DAILY_TTL_SECONDS)
            case SubmissionRequeued():
                await self.counters.increment(status_key(SubmissionStatus.FAILED), -1)

    async def _record_processed(self, event: SubmissionProcessed) -> None:
        submission = event.submission
        await self.counters.increment(status_key(submission.status))
        await self.counters.increment(operation_key(submission.operation))
        await self.counters.increment(source_key(submission.source))

        hour = hourly_key(event.occurred_at)
        await self.counters.increment(hour)
        await self.counters.expire(hour, HOURLY_TTL_SECONDS)

        day = daily_key(event.occurred_at)
        await self.counters.increment(day)
        await self.counters.expire(day, DAILY_TTL_SECONDS)

        logger.info(
            "statistics updated",
            extra={"submission_id": submission.submission_id, "status": submission.status.value},
        )

    async def _record_duplicate(self, event: DuplicateDetected) -> None:
        day = duplicate_daily_key(event.occurred_at)
        await self.counters.increment(day)
        await self.counters.expire(day, DAILY_TTL_SECONDS)

        await self.counters.increment(duplicate_source_key(event.source))

        attempts = duplicate_attempts_key(event.email)
        await self.counters.increment(attempts)
        await self.counters.expire(attempts, DUPLICATE_ATTEMPT_TTL_SECONDS)

        await self.counters.increment_ranked(
            TOP_DUPLICATES_KEY,
            event.email,
            limit=TOP_DUPLICATES_LIMIT,
            ttl_seconds=DAILY_TTL_SECONDS,
        )


@dataclass(frozen=True)
class StatisticsSummary:
    by_status: dict[str, int]
    by_operation: dict[str, int]
    by_source: dict[str, int]
    hourly: dict[str, int]
    today: int
    duplicates_today: int
    duplicates_by_source: dict[str, int]
    top_duplicates: list[tuple[str, int]] = field(default_factory=list)


async def load_statistics(counters: CounterStore, *, now: datetime, hours: int = 24, top: int = 10) -> StatisticsSummary:
    async def _count(key: str) -> int:
        value = await counters.get(key, 0)
        return value if isinstance(value, int) else 0

    hourly: dict[str, int] = {}
    for offset in range(hours - 1, -1, -1):
        moment = now - timedelta(hours=offset)
        hourly[moment.strftime("%Y-%m-%d-%H")] = await _count(hourly_key(moment))

    top_duplicates = await counters.top_ranked(TOP_DUPLICATES_KEY, top)

    return StatisticsSummary(
        by_status={status.value: await _count(status_key(status)) for status in SubmissionStatus},
        by_operation={operation.value: await _count(operation_key(operation)) for operation in Operation},
        by_source={source.value: await _count(source_key(source)) for source in Source},
        hourly=hourly,
        today=await _count(daily_key(now)),
        duplicates_today=await _count(duplicate_daily_key(now)),
        duplicates_by_source={source.value: await _count(duplicate_source_key(source)) for source in Source},
        top_duplicates=top_duplicates,
    )
