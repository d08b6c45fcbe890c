"""
In-process event fan-out.

Every requester has a private channel ("user:{id}") and operators share one
broadcast channel ("operators"). Services publish typed events after their
transaction commits; WebSocket connections subscribe to the channels their
caller may see.

Publishing never waits on a subscriber. Each subscription owns a bounded
queue and drops its oldest undelivered event when a new one arrives at a
full queue.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

OPERATOR_CHANNEL = "operators"

# Event types
REQUEST_CREATED = "request.created"
REQUEST_ASSIGNED = "request.assigned"
REQUEST_STATUS_CHANGED = "request.status_changed"
TRUCK_LOCATION_UPDATED = "truck.location.updated"
TRUCK_STATUS_UPDATED = "truck.status.updated"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


@dataclass(frozen=True)
class Event:
    event: str
    channel: str
    data: Dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Event":
        return cls(
            event=raw["event"],
            channel=raw["channel"],
            data=raw.get("data") or {},
            timestamp=datetime.fromisoformat(raw["timestamp"]),
        )


_CLOSED = object()


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """
    A consumer's view of one or more channels.

    Usage:
        subscription = bus.subscribe(user_channel(7), OPERATOR_CHANNEL)
        try:
            async for event in subscription:
                ...
        finally:
            subscription.close()
    """

    def __init__(self, bus: "EventBus", channels: Iterable[str], maxsize: int, loop: asyncio.AbstractEventLoop):
        self.channels = frozenset(channels)
        self.dropped = 0
        self.closed = False
        self._bus = bus
        self._loop = loop
        # One extra slot so the close marker always fits
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._capacity = maxsize

    def offer(self, event: Event) -> None:
        """Hand an event over without blocking, from any thread."""
        if self.closed:
            return
        if _running_loop() is self._loop:
            self._put(event)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._put, event)

    def _put(self, item: Any) -> None:
        if item is not _CLOSED:
            if self.closed:
                return
            if self._queue.qsize() >= self._capacity:
                self._queue.get_nowait()
                self.dropped += 1
                logger.warning(
                    "Subscriber queue full, dropped oldest event",
                    extra={"channels": sorted(self.channels), "dropped": self.dropped},
                )
        self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        return await self.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        if _running_loop() is self._loop:
            self._put(_CLOSED)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._put, _CLOSED)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Channel registry and publisher."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._channels: Dict[str, Set[Subscription]] = {}
        self._relays: List[Callable[[Event], None]] = []
        # Publishing may happen from worker threads
        self._lock = threading.Lock()

    def subscribe(self, *channels: str) -> Subscription:
        """Open a subscription; must be called from the consumer's event loop."""
        subscription = Subscription(self, channels, self.queue_size, asyncio.get_running_loop())
        with self._lock:
            for channel in subscription.channels:
                self._channels.setdefault(channel, set()).add(subscription)
        logger.debug("Subscribed", extra={"channels": sorted(subscription.channels)})
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            for channel in subscription.channels:
                members = self._channels.get(channel)
                if members is None:
                    continue
                members.discard(subscription)
                if not members:
                    del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def add_relay(self, relay: Callable[[Event], None]) -> None:
        """Register a callable that receives every locally published event."""
        self._relays.append(relay)

    def remove_relay(self, relay: Callable[[Event], None]) -> None:
        if relay in self._relays:
            self._relays.remove(relay)

    def deliver(self, event: Event) -> int:
        """Fan an event out to local subscribers only. Returns the number reached."""
        with self._lock:
            targets = list(self._channels.get(event.channel, ()))
        for subscription in targets:
            subscription.offer(event)
        return len(targets)

    def publish(self, channel: str, event_type: str, payload: Dict[str, Any]) -> Event:
        event = Event(
            event=event_type,
            channel=channel,
            data=payload,
            timestamp=datetime.now(timezone.utc),
        )
        reached = self.deliver(event)
        logger.debug("Published %s to %s (%d subscribers)", event_type, channel, reached)

        for relay in list(self._relays):
            try:
                relay(event)
            except Exception:
                logger.exception("Event relay failed for %s on %s", event_type, channel)
        return event

    def publish_many(self, channels: Iterable[str], event_type: str, payload: Dict[str, Any]) -> List[Event]:
        return [self.publish(channel, event_type, payload) for channel in channels]


class EventOutbox:
    """
    Events staged during a transaction.

    `flush()` publishes them once the transaction has committed; `discard()`
    drops them after a rollback. Without a bus both are no-ops.
    """

    def __init__(self, bus: Optional[EventBus]):
        self.bus = bus
        self._staged: List[tuple] = []

    def __len__(self) -> int:
        return len(self._staged)

    def stage(self, channels: Iterable[str], event_type: str, payload: Dict[str, Any]) -> None:
        self._staged.append((tuple(channels), event_type, payload))

    def flush(self) -> int:
        staged, self._staged = self._staged, []
        if self.bus is None:
            return 0
        published = 0
        for channels, event_type, payload in staged:
            published += len(self.bus.publish_many(channels, event_type, payload))
        return published

    def discard(self) -> None:
        self._staged = []
