"""
Event Bus - lifecycle events for flow runs.

Every state transition of a run produces one LifecycleEvent. Events of a
run carry a strictly increasing sequence number and are delivered to sinks
in emission order:

- RunEmitter stamps sequence numbers and timestamps for one run
- QueueSink is the long-lived one-way channel a caller iterates over
- ListSink collects events in memory
- EventBus fans events out to subscribers across runs
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of lifecycle events."""

    # Node lifecycle
    NODE_START = "node-start"
    NODE_COMPLETE = "node-complete"
    NODE_REUSED = "node-reused"
    NODE_SKIPPED = "node-skipped"
    NODE_ERROR = "node-error"

    # Gate outcomes that leave the node unresolved
    NODE_BLOCKED = "node-blocked"
    NODE_AWAITING_CONFIRMATION = "node-awaiting-confirmation"

    # Terminal (exactly one per run)
    FLOW_COMPLETE = "flow-complete"
    FLOW_ERROR = "flow-error"


TERMINAL_EVENTS = frozenset({EventType.FLOW_COMPLETE, EventType.FLOW_ERROR})


@dataclass
class LifecycleEvent:
    """An event in a flow run."""

    type: EventType
    run_id: str
    sequence: int
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        """One flat JSON object per event, tagged with ``type``."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "node_id": self.node_id,
            **self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Server-Sent Events frame."""
        return f"data: {self.to_json()}\n\n"


class EventSink(Protocol):
    async def emit(self, event: LifecycleEvent) -> None: ...


class ListSink:
    """Collects events in memory."""

    def __init__(self) -> None:
        self.events: list[LifecycleEvent] = []

    async def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


class QueueSink:
    """
    One-way channel: the run writes, one consumer iterates.

    Iteration stops after a terminal event or after close().
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def emit(self, event: LifecycleEvent) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[LifecycleEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
            if item.is_terminal:
                return


class RunEmitter:
    """
    Stamps and delivers the events of one run.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the event and the sequence keeps counting.
    """

    def __init__(self, run_id: str, sinks: list[EventSink] | None = None):
        self.run_id = run_id
        self.sinks: list[EventSink] = list(sinks or [])
        self._sequence = 0

    @property
    def sequence(self) -> int:
        return self._sequence

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    async def emit(
        self, event_type: EventType, node_id: str | None = None, **data: Any
    ) -> LifecycleEvent:
        self._sequence += 1
        event = LifecycleEvent(
            type=event_type,
            run_id=self.run_id,
            sequence=self._sequence,
            node_id=node_id,
            data=data,
        )
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(f"Event sink {type(sink).__name__} failed on {event_type}: {e}")
        return event


# Type for event handlers
EventHandler = Callable[[LifecycleEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub over lifecycle events from any number of runs.

    Usable directly as a sink. Handlers run concurrently; a failing handler
    is logged and does not affect the others.

    Example:
        bus = EventBus()

        async def on_blocked(event: LifecycleEvent):
            print(f"{event.node_id} blocked: {event.data['verdict']['block_reason']}")

        bus.subscribe(event_types=[EventType.NODE_BLOCKED], handler=on_blocked)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[LifecycleEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """Register a handler. Returns a subscription ID for unsubscribe()."""
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def emit(self, event: LifecycleEvent) -> None:
        await self.publish(event)

    async def publish(self, event: LifecycleEvent) -> None:
        """Publish an event to all matching subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await asyncio.gather(*[self._run_handler(h, event) for h in handlers])

    def _matches(self, subscription: Subscription, event: LifecycleEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _run_handler(self, handler: EventHandler, event: LifecycleEvent) -> None:
        async with self._semaphore:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.type}: {e}")

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[LifecycleEvent]:
        """Most recent first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> LifecycleEvent | None:
        """Wait for a matching event. Returns None on timeout."""
        result: LifecycleEvent | None = None
        received = asyncio.Event()

        async def handler(event: LifecycleEvent) -> None:
            nonlocal result
            result = event
            received.set()

        sub_id = self.subscribe([event_type], handler, filter_run=run_id, filter_node=node_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
