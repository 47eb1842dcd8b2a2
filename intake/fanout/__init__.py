from __future__ import annotations

from intake.domain.contracts import CounterStore, MirrorSink, NotificationStore
from intake.domain.events import EventBus
from intake.fanout.mirror import MirrorPublisher
from intake.fanout.notifications import NotificationGenerator
from intake.fanout.statistics import StatisticsAggregator


def build_event_bus(
    *,
    counters: CounterStore,
    notifications: NotificationStore,
    mirror: MirrorSink,
) -> EventBus:
    # Delivery order: statistics, notifications, mirror.
    return EventBus(
        subscribers=(
            StatisticsAggregator(counters=counters),
            NotificationGenerator(store=notifications),
            MirrorPublisher(sink=mirror),
        )
    )


__all__ = ["build_event_bus"]
