"""Runtime surfaces: lifecycle events, concurrent runs, the streaming server."""

from flowgate.runtime.event_bus import (
    EventBus,
    EventType,
    LifecycleEvent,
    ListSink,
    QueueSink,
    RunEmitter,
)

__all__ = [
    "EventBus",
    "EventType",
    "LifecycleEvent",
    "ListSink",
    "QueueSink",
    "RunEmitter",
]
