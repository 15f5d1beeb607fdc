# reservations_service/broadcast.py
"""
Fan-out of reservation events to connected viewers.

InMemoryBroadcastChannel
    Delivers events to every subscription of this process. Each
    subscription owns a bounded asyncio.Queue on the event loop that created
    it; ``publish`` may be called from any thread (sync route handlers run in
    a worker pool) and hands the event over with ``call_soon_threadsafe``, so
    every subscriber sees events in publish order. When a subscriber's queue
    is full the event is dropped for that subscriber only.

RedisBroadcastChannel
    Publishes events to a Redis pub/sub channel so that every worker process
    sees them. ``relay`` runs as a task in each process and feeds the
    validated events into the local in-memory channel.

Delivery is at-most-once and there is no replay: a client that reconnects
re-fetches the reservations it displays.
"""

import asyncio
import logging
import os
import threading
from typing import AsyncIterator, List, Optional

import redis
import redis.asyncio as aioredis

from .events import ReservationEvent, event_to_json, try_parse_event

logger = logging.getLogger(__name__)

REDIS_EVENTS_CHANNEL = os.getenv("REDIS_EVENTS_CHANNEL", "reservations:events")
SUBSCRIBER_QUEUE_SIZE = 100
RELAY_RETRY_SECONDS = 2


class Subscription:
    """One viewer's event queue. Create it through ``InMemoryBroadcastChannel.subscribe``."""

    def __init__(self, channel: "InMemoryBroadcastChannel", loop: asyncio.AbstractEventLoop, maxsize: int):
        self._channel = channel
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: ReservationEvent) -> None:
        # Runs on self.loop
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Subscriber queue full, dropped {event.type} for reservation {event.data.id}"
            )

    async def get(self) -> ReservationEvent:
        return await self.queue.get()

    async def events(self) -> AsyncIterator[ReservationEvent]:
        while True:
            yield await self.queue.get()

    def close(self) -> None:
        self._channel.unsubscribe(self)


class InMemoryBroadcastChannel:
    """Process-local publish/subscribe for reservation events."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a subscriber. Must be called from a running event loop."""
        subscription = Subscription(self, asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event: ReservationEvent) -> int:
        """
        Hand ``event`` to every current subscriber.

        Returns
        -------
        int
            Number of subscribers the event was handed to.
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(subscription._offer, event)
            except RuntimeError:
                # Event loop already closed; the connection is gone
                logger.info("Removing subscriber whose event loop is closed")
                self.unsubscribe(subscription)
                continue
            delivered += 1
        return delivered


class RedisBroadcastChannel:
    """Publishes events through Redis pub/sub for multi-process deployments."""

    def __init__(self, client: redis.Redis, channel: str = REDIS_EVENTS_CHANNEL):
        self.client = client
        self.channel = channel

    def publish(self, event: ReservationEvent) -> int:
        """
        Publish ``event`` to the Redis channel.

        Returns the number of Redis subscribers (relays) that received it.
        Raises ``redis.RedisError`` when Redis is unreachable.
        """
        return int(self.client.publish(self.channel, event_to_json(event)))

    async def relay(self, local: InMemoryBroadcastChannel, redis_url: str) -> None:
        """
        Forward events from Redis into ``local`` until cancelled.

        Malformed payloads are logged and dropped. Connection errors are
        retried after a short pause.
        """
        r = aioredis.from_url(redis_url, decode_responses=True)
        logger.info(f"Reservation event relay started on {self.channel}")

        try:
            while True:
                pubsub = r.pubsub()
                try:
                    await pubsub.subscribe(self.channel)
                    async for message in pubsub.listen():
                        if message.get("type") != "message":
                            continue
                        event = try_parse_event(message["data"])
                        if event is not None:
                            local.publish(event)
                except asyncio.CancelledError:
                    logger.info("Reservation event relay cancelled")
                    raise
                except Exception:
                    logger.exception(f"Reservation event relay error, retrying in {RELAY_RETRY_SECONDS}s")
                    await asyncio.sleep(RELAY_RETRY_SECONDS)
                finally:
                    await pubsub.aclose()
        finally:
            await r.aclose()


def publish_safely(channel, event: ReservationEvent) -> Optional[int]:
    """
    Publish without letting a broadcast failure escape.

    Returns the delivery count, or None when publishing failed.
    """
    try:
        return channel.publish(event)
    except Exception:
        logger.exception(f"Failed to broadcast {event.type} for reservation {event.data.id}")
        return None
