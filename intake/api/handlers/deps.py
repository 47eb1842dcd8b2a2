from __future__ import annotations

from dataclasses import dataclass

from intake.domain.contracts import CounterStore, NotificationStore, RecordStore, WorkQueue
from intake.domain.events import EventBus


@dataclass(frozen=True)
class ApiDeps:
    store: RecordStore
    queue: WorkQueue
    notifications: NotificationStore
    counters: CounterStore
    events: EventBus
