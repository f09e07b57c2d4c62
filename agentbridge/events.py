"""Event broadcaster with bounded replay history and SSE framing."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from agentbridge.schemas import BridgeEvent

logger = logging.getLogger(__name__)

EVENT_HISTORY_LIMIT = 100
HEARTBEAT_SECONDS = 15.0
SUBSCRIBER_QUEUE_LIMIT = 1000

EventSink = Callable[[BridgeEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventRing:
    """Fixed-capacity circular buffer of events; oldest entry is overwritten first."""

    def __init__(self, capacity: int = EVENT_HISTORY_LIMIT):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._slots: list[BridgeEvent | None] = [None] * capacity
        self._next = 0
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def append(self, event: BridgeEvent) -> None:
        self._slots[self._next] = event
        self._next = (self._next + 1) % self.capacity
        if self._count < self.capacity:
            self._count += 1

    def items(self) -> list[BridgeEvent]:
        """Return buffered events in chronological order."""
        if self._count < self.capacity:
            start = 0
        else:
            # Full: the slot about to be overwritten holds the oldest event.
            start = self._next
        return [
            self._slots[(start + i) % self.capacity]  # type: ignore[misc]
            for i in range(self._count)
        ]

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._next = 0
        self._count = 0


class Subscription:
    """Handle for a registered sink; closing it stops delivery."""

    def __init__(self, broadcaster: EventBroadcaster, sink: EventSink):
        self._broadcaster = broadcaster
        self._sink = sink
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._broadcaster.unsubscribe(self._sink)
            self.closed = True


class EventBroadcaster:
    """Fan out state-change events to subscribed sinks.

    Every published event is kept in a ring buffer so that new subscribers
    can catch up on recent activity before receiving live events.
    """

    def __init__(
        self,
        capacity: int = EVENT_HISTORY_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ring = EventRing(capacity)
        self._sinks: list[EventSink] = []
        self._clock = clock
        self._lock = Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._sinks)

    def publish(self, event_type: str, data: dict[str, Any] | None = None) -> BridgeEvent:
        """Record an event and deliver it to every current subscriber."""
        event = BridgeEvent(
            id=f"evt-{uuid.uuid4().hex[:16]}",
            type=event_type,
            timestamp=self._clock(),
            data=data or {},
        )
        with self._lock:
            self._ring.append(event)
            for sink in list(self._sinks):
                self._deliver(sink, event)

        logger.debug(f"Published event {event.type} ({event.id})")
        return event

    def subscribe(self, sink: EventSink, last_event_id: str | None = None) -> Subscription:
        """Replay buffered events into ``sink``, then register it for live events.

        If ``last_event_id`` is still in the buffer only the events after it
        are replayed; otherwise the whole buffer is.
        """
        with self._lock:
            backlog = self._ring.items()
            if last_event_id:
                for index, event in enumerate(backlog):
                    if event.id == last_event_id:
                        backlog = backlog[index + 1:]
                        break

            self._sinks.append(sink)
            for event in backlog:
                if not self._deliver(sink, event):
                    break

        logger.debug(f"Subscriber added, replayed {len(backlog)} events")
        return Subscription(self, sink)

    def unsubscribe(self, sink: EventSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def history(self) -> list[BridgeEvent]:
        """Return the buffered events, oldest first."""
        with self._lock:
            return self._ring.items()

    def clear(self) -> None:
        """Drop buffered history. Subscribers stay registered."""
        with self._lock:
            self._ring.clear()

    def _deliver(self, sink: EventSink, event: BridgeEvent) -> bool:
        # Caller holds self._lock.
        try:
            sink(event)
        except Exception as e:
            logger.warning(f"Dropping event subscriber after write failure: {e}")
            if sink in self._sinks:
                self._sinks.remove(sink)
            return False
        return True


def format_sse(event: BridgeEvent) -> str:
    """Frame an event for a text/event-stream response."""
    payload = json.dumps(event.to_wire(), separators=(",", ":"))
    return f"id: {event.id}\nevent: {event.type}\ndata: {payload}\n\n"


async def stream_events(
    broadcaster: EventBroadcaster,
    last_event_id: str | None = None,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    heartbeat_seconds: float = HEARTBEAT_SECONDS,
    queue_limit: int = SUBSCRIBER_QUEUE_LIMIT,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames: the replay backlog first, then live events.

    Events are handed to the event loop with ``call_soon_threadsafe`` so
    publishing never waits on this connection. A subscriber that falls
    more than ``queue_limit`` events behind is unsubscribed and its stream
    ends.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[BridgeEvent] = asyncio.Queue(maxsize=queue_limit)
    overflowed = False

    def enqueue(event: BridgeEvent) -> None:
        nonlocal overflowed
        if overflowed:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            overflowed = True
            logger.warning(f"Dropping event subscriber more than {queue_limit} events behind")
            subscription.close()

    def sink(event: BridgeEvent) -> None:
        loop.call_soon_threadsafe(enqueue, event)

    subscription = broadcaster.subscribe(sink, last_event_id=last_event_id)
    try:
        while True:
            if overflowed:
                break
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            yield format_sse(event)
    finally:
        subscription.close()
        logger.debug("Event stream closed")
