import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import orjson
from redis.asyncio import Redis

_logger = logging.getLogger("pinrelay.backplane")

# (connection id, frame payload) -> None
Deliver = Callable[[str, dict], Awaitable[None]]


class BackplaneBase(ABC):
    """
    Carries frames addressed to a connection id that is not registered in
    this process to the process that holds it. Delivery is best effort.
    """

    def __init__(self):
        self._deliver: Optional[Deliver] = None

    async def start(self, deliver: Deliver):
        self._deliver = deliver

    async def stop(self):
        self._deliver = None

    @abstractmethod
    async def ping(self):
        ...

    @abstractmethod
    async def publish(self, connection_id: str, payload: dict):
        ...


class InMemoryBackplane(BackplaneBase):
    """
    Single process deployment: a connection that is not local does not exist
    anywhere, so the frame is dropped.
    """

    async def ping(self):
        pass

    async def publish(self, connection_id: str, payload: dict):
        _logger.debug(
            "connection %s is gone, dropping %s", connection_id, payload["t"]
        )


class RedisBackplane(BackplaneBase):
    """
    Every process subscribes to one Redis channel and hands each envelope to
    its own connection map, which ignores ids it does not hold.
    """

    CHANNEL = "pinrelay:connections"

    def __init__(self, redis: Redis, channel: str = CHANNEL):
        super(RedisBackplane, self).__init__()
        self._redis = redis
        self._channel = channel
        self._pubsub = None
        self._receiver: Optional[asyncio.Task] = None

    async def start(self, deliver: Deliver):
        await super(RedisBackplane, self).start(deliver)
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self._channel)
        self._receiver = asyncio.create_task(self._receiver_loop())

    async def stop(self):
        if self._receiver is not None:
            self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
            self._receiver = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self._redis.aclose()
        await super(RedisBackplane, self).stop()

    async def ping(self):
        await self._redis.ping()

    async def publish(self, connection_id: str, payload: dict):
        envelope = orjson.dumps({"to": connection_id, "frame": payload})
        await self._redis.publish(self._channel, envelope)

    async def _receiver_loop(self):
        async for message in self._pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                envelope = orjson.loads(message["data"])
                await self._deliver(envelope["to"], envelope["frame"])
            except Exception as exc:
                _logger.error(
                    "failed to deliver backplane message: %s: %s",
                    type(exc).__name__,
                    exc,
                )
