from __future__ import annotations

from dataclasses import dataclass, field

from intake.clients.stub import InMemoryCounterStore, StubMirrorSink
from intake.domain.contracts import RecordStore, WorkQueue
from intake.domain.duplicates import DuplicateDetector
from intake.domain.events import EventBus
from intake.fanout import build_event_bus
from intake.repositories.stub import InMemoryNotificationStore, InMemoryRecordStore, InMemoryWorkQueue
from intake.roles import MIRROR_ROLE, ROLE_TUBES
from intake.workers.handlers.deps import WorkerDeps
from intake.workers.loop import WorkerLoop
from intake.workers.mirror_consumer import MirrorConsumerLoop

CSV_HEADER = "name,email,phone,gender,date_of_birth,course,enrollment_date"


def student(email: str, name: str = "Ada Lovelace") -> dict[str, object]:
    return {"name": name, "email": email, "gender": "female", "phone": "5550101234"}


def csv_line(name: str, email: str) -> str:
    return f"{name},{email},5550101234,female,2001-04-12,Mathematics,2024-09-01"


@dataclass
class Pipeline:
    store: RecordStore = field(default_factory=InMemoryRecordStore)
    queue: WorkQueue = field(default_factory=InMemoryWorkQueue)
    counters: InMemoryCounterStore = field(default_factory=InMemoryCounterStore)
    notifications: InMemoryNotificationStore = field(default_factory=InMemoryNotificationStore)
    mirror: StubMirrorSink = field(default_factory=StubMirrorSink)

    @property
    def events(self) -> EventBus:
        return build_event_bus(counters=self.counters, notifications=self.notifications, mirror=self.mirror)

    def worker(self, role: str = "worker-submissions", worker_id: str = "worker-1", **overrides: int) -> WorkerLoop:
        deps = WorkerDeps(store=self.store, detector=DuplicateDetector(store=self.store), events=self.events)
        settings: dict[str, int] = {"reserve_timeout_ms": 0, "retry_base_delay_seconds": 0}
        settings.update(overrides)
        return WorkerLoop(
            role=role,
            worker_id=worker_id,
            tubes=ROLE_TUBES[role],
            queue=self.queue,
            deps=deps,
            **settings,
        )

    def mirror_consumer(self, worker_id: str = "mirror-1") -> MirrorConsumerLoop:
        return MirrorConsumerLoop(role=MIRROR_ROLE, worker_id=worker_id, queue=self.queue, reserve_timeout_ms=0)


async def drain(loop: WorkerLoop | MirrorConsumerLoop, *, limit: int = 20) -> int:
    """Run the loop until it finds no work; returns the number of items handled."""
    handled = 0
    while handled < limit and await loop.run_once():
        handled += 1
    return handled
