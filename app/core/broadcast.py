"""Broadcast bus: fan-out of generation events to live subscribers.

Delivery is at-most-once and best-effort. There is no replay log: a
subscriber only sees events published after it subscribed, and a slow
in-process subscriber whose queue is full loses events.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

import pydantic
import redis.asyncio as aioredis

from app.core.events import decode_event, encode_event
from app.core.logging import get_logger

logger = get_logger(__name__)


def channel_name(report_id: str) -> str:
    return f"report-events:{report_id}"


class BroadcastBackend(Protocol):
    name: str

    async def publish(self, channel: str, payload: str) -> None: ...

    def subscribe(self, channel: str): ...

    async def close(self) -> None: ...


class LocalBroadcastBackend:
    """In-process pub/sub with one bounded queue per subscriber."""

    name = "memory"

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, payload: str) -> None:
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full on {channel}, dropping event")

    @asynccontextmanager
    async def subscribe(self, channel: str):
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[channel].add(queue)
        try:
            yield self._drain(queue)
        finally:
            subscribers = self._subscribers.get(channel)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]

    @staticmethod
    async def _drain(queue: asyncio.Queue) -> AsyncIterator[str]:
        while True:
            yield await queue.get()

    async def close(self) -> None:
        self._subscribers.clear()


class RedisBroadcastBackend:
    """Redis pub/sub, so every worker process sees every run's events."""

    name = "redis"

    def __init__(self, client: aioredis.Redis):
        self._client = client

    async def publish(self, channel: str, payload: str) -> None:
        await self._client.publish(channel, payload)

    @asynccontextmanager
    async def subscribe(self, channel: str):
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        try:
            yield self._listen(pubsub)
        finally:
            try:
                await pubsub.unsubscribe(channel)
            finally:
                await pubsub.aclose()

    @staticmethod
    async def _listen(pubsub) -> AsyncIterator[str]:
        async for message in pubsub.listen():
            if message.get("type") == "message":
                yield message["data"]

    async def close(self) -> None:
        # Client is owned by the engine context
        return None


class BroadcastBus:
    """Publishes events per report and hands out decoded subscriptions."""

    def __init__(self, backend: BroadcastBackend | None = None):
        self.backend = backend or LocalBroadcastBackend()

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def publish(self, report_id: str, event) -> bool:
        """
        Publish an event on the report's channel.

        Returns:
            True if handed to the backend; failures are logged, never raised
        """
        try:
            await self.backend.publish(channel_name(report_id), encode_event(event))
            return True
        except Exception as e:
            logger.warning(f"Broadcast publish failed for report {report_id}: {e}")
            return False

    @asynccontextmanager
    async def subscribe(self, report_id: str):
        """Subscribe to a report's events. Yields an async iterator of events."""
        async with self.backend.subscribe(channel_name(report_id)) as messages:
            yield self._decode(messages)

    @staticmethod
    async def _decode(messages: AsyncIterator[str]):
        async for raw in messages:
            try:
                yield decode_event(raw)
            except pydantic.ValidationError as e:
                logger.warning(f"Skipping undecodable broadcast payload: {e}")

    async def close(self) -> None:
        await self.backend.close()
