import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

import redis.asyncio as redis

from matchchat.core.settings import settings


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]

_STOP = object()


class _LocalSubscription:

    def __init__(self, bus: "LocalBus", channel: str, queue: asyncio.Queue, on_message: OnMessage) -> None:
        self._bus = bus
        self._channel = channel
        self._queue = queue
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            message = await self._queue.get()
            if message is _STOP or not self._running:
                break
            await self._on_message(message)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        self._bus._detach(self._channel, self._queue)
        self._queue.put_nowait(_STOP)


class LocalBus:
    """In-process fan-out. Only reaches subscribers living in the same worker."""

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _LocalSubscription:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(channel, set()).add(queue)
        return _LocalSubscription(self, channel, queue, on_message)

    def _detach(self, channel: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(channel)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._queues[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, ()))

    async def close(self) -> None:
        self._queues.clear()


class _RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: OnMessage) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.RedisError as e:
                # the owning Subscription reports this once and stops
                logger.warning(f"Redis subscription on '{self._channel}' failed to read: {e}")
                raise
            if not self._running:
                break
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._on_message(data)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis subscription on '{self._channel}': {e}")


class RedisBus:
    """Fan-out across workers through Redis pub/sub."""

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


_bus: Optional[LocalBus | RedisBus] = None


async def get_bus() -> LocalBus | RedisBus:
    global _bus
    if _bus is not None:
        return _bus
    if settings.REDIS_URL:
        _bus = RedisBus(settings.REDIS_URL)
        logger.info("Realtime bus: Redis pub/sub")
    else:
        _bus = LocalBus()
        logger.info("Realtime bus: in-process")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is None:
        return
    await _bus.close()
    _bus = None
