from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from intake.workers.loop import WorkerLoop
from intake.workers.mirror_consumer import MirrorConsumerLoop

QueueLoop = WorkerLoop | MirrorConsumerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    reserve_timeout_ms: int = 1000
    claim_lease_seconds: int = 60
    heartbeat_interval_ms: int = 10000
    max_attempts: int = 3
    retry_base_delay_seconds: int = 5
    retry_max_delay_seconds: int = 300
    concurrency: int = 1


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=_env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=_env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=_env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        reserve_timeout_ms=_env_int("WORKER_RESERVE_TIMEOUT_MS", 1000),
        claim_lease_seconds=_env_int("WORKER_CLAIM_LEASE_SECONDS", 60),
        heartbeat_interval_ms=_env_int("WORKER_HEARTBEAT_INTERVAL_MS", 10000),
        max_attempts=_env_int("WORKER_MAX_ATTEMPTS", 3),
        retry_base_delay_seconds=_env_int("WORKER_RETRY_BASE_DELAY_SECONDS", 5),
        retry_max_delay_seconds=_env_int("WORKER_RETRY_MAX_DELAY_SECONDS", 300),
        concurrency=_env_int("WORKER_CONCURRENCY", 1),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def apply_runtime_settings(worker_loop: QueueLoop, settings: WorkerRuntimeSettings) -> None:
    worker_loop.reserve_timeout_ms = settings.reserve_timeout_ms
    worker_loop.claim_lease_seconds = settings.claim_lease_seconds
    worker_loop.max_attempts = settings.max_attempts
    worker_loop.retry_base_delay_seconds = settings.retry_base_delay_seconds
    if isinstance(worker_loop, WorkerLoop):
        worker_loop.heartbeat_interval_ms = settings.heartbeat_interval_ms
        worker_loop.retry_max_delay_seconds = settings.retry_max_delay_seconds


async def run_worker_until_stopped(
    *,
    worker_loop: QueueLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    apply_runtime_settings(worker_loop, settings)

    if state is not None:
        state.started = True

    log_extra = {"role": role, "service": role, "run_id": run_id, "worker_id": worker_loop.worker_id}
    logger.info("worker loop started", extra={**log_extra, "tubes": ",".join(worker_loop.tubes)})

    while not stop_event.is_set():
        delay_ms = settings.idle_backoff_ms
        try:
            did_work = await worker_loop.run_once()
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.claims_total += 1
                else:
                    state.idle_ticks_total += 1
            delay_ms = settings.poll_interval_ms if did_work else settings.idle_backoff_ms
            logger.info("worker tick", extra={**log_extra, "did_work": str(did_work).lower()})
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception("worker tick error", extra=log_extra)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_extra)
    if state is not None:
        state.stopped = True


async def run_worker_pool_until_stopped(
    *,
    worker_loops: list[QueueLoop],
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    """Run independent loops side by side; they share only the injected handles."""
    await asyncio.gather(
        *(
            run_worker_until_stopped(
                worker_loop=worker_loop,
                role=role,
                run_id=run_id,
                stop_event=stop_event,
                settings=settings,
                logger=logger,
                state=state,
            )
            for worker_loop in worker_loops
        )
    )
