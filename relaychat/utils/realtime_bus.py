import asyncio
import logging
import threading
from typing import Dict, List, Optional, Union

import redis.asyncio as redis

from relaychat.config import get_settings


logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Connection-scoped feed of raw event payloads for one channel.

    Nothing is buffered once the subscription is closed; a reconnecting
    client starts from a fresh pull snapshot instead.
    """

    def __init__(self, channel: str) -> None:
        self.channel = channel
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, message: str) -> bool:
        if self.closed:
            return False
        return self._put(message)

    def _put(self, item) -> bool:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if running is self._loop:
                self._queue.put_nowait(item)
            else:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # owning loop already shut down
            return False
        return True

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self.closed:
            raise StopAsyncIteration
        message = await self._queue.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._put(_CLOSED)


class LocalBus:
    """In-process fan-out; enough for a single worker."""

    distributed = False

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    async def publish(self, channel: str, message: str) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(channel, []))
        return sum(1 for sub in targets if sub.deliver(message))

    async def subscribe(self, channel: str) -> Subscription:
        sub = _LocalSubscription(self, channel)
        with self._lock:
            self._subscriptions.setdefault(channel, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.channel)
            if not subs:
                return
            try:
                subs.remove(sub)
            except ValueError:
                pass
            if not subs:
                del self._subscriptions[sub.channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel, []))

    async def close(self) -> None:
        with self._lock:
            subs = [s for group in self._subscriptions.values() for s in group]
        for sub in subs:
            await sub.close()


class _LocalSubscription(Subscription):

    def __init__(self, bus: LocalBus, channel: str) -> None:
        super().__init__(channel)
        self._bus = bus

    async def close(self) -> None:
        self._bus._remove(self)
        await super().close()


class RedisSubscription:

    def __init__(self, pubsub, channel: str) -> None:
        self.channel = channel
        self._pubsub = pubsub
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        while not self.closed:
            msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                return data
        raise StopAsyncIteration

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        finally:
            await self._pubsub.aclose()


class RedisBus:
    """Fan-out across workers through Redis pub/sub channels."""

    distributed = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> int:
        return await self._redis.publish(channel, message)

    async def subscribe(self, channel: str) -> RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        await self._redis.aclose()


Bus = Union[LocalBus, RedisBus]

_bus: Optional[Bus] = None


async def get_bus() -> Bus:
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if url:
        logger.info("Realtime bus: redis")
        _bus = RedisBus(url)
    else:
        logger.info("Realtime bus: in-process")
        _bus = LocalBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is None:
        return
    await _bus.close()
    _bus = None
