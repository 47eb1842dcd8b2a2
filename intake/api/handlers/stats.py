from __future__ import annotations

from datetime import UTC, datetime

from intake.api.handlers.deps import ApiDeps
from intake.api.schemas import DuplicateEmailCount, QueueStatsResponse, StatisticsResponse
from intake.domain.use_cases.ingest import SOURCE_TUBES
from intake.fanout.statistics import load_statistics

COMPONENT_ID = "api.get_statistics"


async def get_statistics_handler(*, hours: int, top: int, api_deps: ApiDeps) -> StatisticsResponse:
    summary = await load_statistics(api_deps.counters, now=datetime.now(tz=UTC), hours=hours, top=top)
    queues = []
    for tube in SOURCE_TUBES.values():
        stats = await api_deps.queue.stats(tube=tube)
        queues.append(
            QueueStatsResponse(
                tube=stats.tube,
                ready=stats.ready,
                delayed=stats.delayed,
                reserved=stats.reserved,
                buried=stats.buried,
            )
        )
    return StatisticsResponse(
        by_status=summary.by_status,
        by_operation=summary.by_operation,
        by_source=summary.by_source,
        hourly=summary.hourly,
        today=summary.today,
        duplicates_today=summary.duplicates_today,
        duplicates_by_source=summary.duplicates_by_source,
        top_duplicates=[DuplicateEmailCount(email=email, count=count) for email, count in summary.top_duplicates],
        queues=queues,
    )
