from __future__ import annotations

from dataclasses import dataclass

from intake.domain.contracts import RecordStore
from intake.domain.duplicates import DuplicateDetector
from intake.domain.events import EventBus


@dataclass(frozen=True)
class WorkerDeps:
    store: RecordStore
    detector: DuplicateDetector
    events: EventBus
