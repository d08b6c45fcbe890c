"""
Cross-worker event relay over Redis pub/sub.

Each worker process has its own EventBus. When the relay is enabled every
local publish is also sent to Redis, and events published by other workers
are delivered to this worker's subscribers. Messages carry the sending
worker's origin id so a worker never re-delivers its own events.

Redis trouble is contained here: sends run in background tasks behind a
circuit breaker and failures are only logged.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Optional, Set

from fleet_backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from fleet_backend.app.services.event_bus import Event, EventBus

logger = logging.getLogger(__name__)


class RedisEventRelay:

    def __init__(
        self,
        bus: EventBus,
        redis: Any,
        channel_prefix: str = "fleet:events:",
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.bus = bus
        self.redis = redis
        self.channel_prefix = channel_prefix
        self.breaker = breaker or CircuitBreaker(name="event-relay", failure_threshold=5, reset_timeout=30)
        self.origin = uuid.uuid4().hex
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[asyncio.Task] = set()
        self._listener: Optional[asyncio.Task] = None
        self._pubsub = None

    def redis_channel(self, channel: str) -> str:
        return f"{self.channel_prefix}{channel}"

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.bus.add_relay(self.forward)
        self._listener = asyncio.create_task(self._listen())
        logger.info("Event relay started (origin=%s)", self.origin)

    async def stop(self) -> None:
        self.bus.remove_relay(self.forward)
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("Event relay stopped")

    def forward(self, event: Event) -> None:
        """Schedule a send of a locally published event; never blocks the caller."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(event)
        else:
            loop.call_soon_threadsafe(self._spawn, event)

    def _spawn(self, event: Event) -> None:
        task = asyncio.create_task(self._send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, event: Event) -> None:
        message = json.dumps({"origin": self.origin, **event.to_dict()})
        try:
            await self.breaker.call(self.redis.publish, self.redis_channel(event.channel), message)
        except CircuitOpenError:
            logger.debug("Event relay circuit open, skipped %s", event.event)
        except Exception as exc:
            logger.warning("Event relay publish failed for %s: %s", event.event, exc)

    def handle_message(self, raw: Any) -> Optional[Event]:
        """Deliver a message received from Redis; returns the event when delivered."""
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Event relay received a malformed message")
            return None

        if decoded.get("origin") == self.origin:
            return None

        try:
            event = Event.from_dict(decoded)
        except (KeyError, TypeError, ValueError):
            logger.warning("Event relay received an incomplete event")
            return None

        self.bus.deliver(event)
        return event

    async def _listen(self) -> None:
        pattern = f"{self.channel_prefix}*"
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(pattern)
                async for message in pubsub.listen():
                    if message.get("type") not in ("message", "pmessage"):
                        continue
                    self.handle_message(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Event relay listener failed: %s; resubscribing", exc)
                await asyncio.sleep(1)
            finally:
                try:
                    await pubsub.aclose()
                except Exception as exc:
                    logger.debug("Closing relay pubsub failed: %s", exc)
