from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os
import socket

from intake.api.handlers.deps import ApiDeps
from intake.clients.redis_cache import RedisCounterStore, build_async_redis_client, get_redis_url
from intake.clients.stub import InMemoryCounterStore
from intake.domain.contracts import CounterStore, MirrorSink, NotificationStore, RecordStore, WorkQueue
from intake.domain.duplicates import DuplicateDetector
from intake.domain.events import EventBus
from intake.fanout import build_event_bus
from intake.fanout.mirror import QueueMirrorSink
from intake.repositories.postgres import (
    AsyncpgPoolManager,
    PostgresNotificationStore,
    PostgresRecordStore,
    PostgresWorkQueue,
)
from intake.repositories.stub import InMemoryNotificationStore, InMemoryRecordStore, InMemoryWorkQueue
from intake.roles import RuntimeRole
from intake.workers.handlers.deps import WorkerDeps
from intake.workers.loop import WorkerLoop
from intake.workers.mirror_consumer import MirrorConsumerLoop
from intake.workers.runner import QueueLoop, WorkerRuntimeSettings, worker_runtime_settings_from_env


@dataclass
class RuntimeContainer:
    store: RecordStore
    queue: WorkQueue
    notifications: NotificationStore
    counters: CounterStore
    mirror: MirrorSink
    events: EventBus
    api_deps: ApiDeps
    worker_loops: list[QueueLoop]
    worker_settings: WorkerRuntimeSettings
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_worker_id(role: str, index: int) -> str:
    return f"{role}:{socket.gethostname()}:{os.getpid()}:{index}"


def build_runtime_container(
    role: RuntimeRole,
    settings: WorkerRuntimeSettings | None = None,
) -> RuntimeContainer:
    settings = settings or worker_runtime_settings_from_env()
    startup_hooks: list[Callable[[], Awaitable[None]]] = []
    shutdown_hooks: list[Callable[[], Awaitable[None]]] = []

    database_url = os.getenv("DATABASE_URL")
    store: RecordStore
    queue: WorkQueue
    notifications: NotificationStore
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        store = PostgresRecordStore(pool_manager=pool_manager)
        queue = PostgresWorkQueue(
            pool_manager=pool_manager,
            poll_interval_seconds=settings.poll_interval_ms / 1000,
        )
        notifications = PostgresNotificationStore(pool_manager=pool_manager)
        startup_hooks.append(pool_manager.startup)
        shutdown_hooks.append(pool_manager.shutdown)
    else:
        store = InMemoryRecordStore()
        queue = InMemoryWorkQueue()
        notifications = InMemoryNotificationStore()

    counters: CounterStore
    redis_url = get_redis_url()
    if redis_url:
        redis_counters = RedisCounterStore(client=build_async_redis_client(redis_url))
        counters = redis_counters
        shutdown_hooks.append(redis_counters.close)
    else:
        counters = InMemoryCounterStore()

    mirror = QueueMirrorSink(queue=queue)
    events = build_event_bus(counters=counters, notifications=notifications, mirror=mirror)
    api_deps = ApiDeps(
        store=store,
        queue=queue,
        notifications=notifications,
        counters=counters,
        events=events,
    )

    worker_loops: list[QueueLoop] = []
    if role.consumes_mirror:
        worker_loops = [
            MirrorConsumerLoop(role=role.name, worker_id=build_worker_id(role.name, index), queue=queue)
            for index in range(max(settings.concurrency, 1))
        ]
    elif role.is_worker:
        worker_deps = WorkerDeps(store=store, detector=DuplicateDetector(store=store), events=events)
        worker_loops = [
            WorkerLoop(
                role=role.name,
                worker_id=build_worker_id(role.name, index),
                tubes=role.tubes,
                queue=queue,
                deps=worker_deps,
            )
            for index in range(max(settings.concurrency, 1))
        ]

    return RuntimeContainer(
        store=store,
        queue=queue,
        notifications=notifications,
        counters=counters,
        mirror=mirror,
        events=events,
        api_deps=api_deps,
        worker_loops=worker_loops,
        worker_settings=settings,
        on_startup=_chain(startup_hooks),
        on_shutdown=_chain(list(reversed(shutdown_hooks))),
    )


def _chain(hooks: list[Callable[[], Awaitable[None]]]) -> Callable[[], Awaitable[None]] | None:
    if not hooks:
        return None

    async def _run() -> None:
        for hook in hooks:
            await hook()

    return _run
