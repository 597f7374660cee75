import asyncio

import async_timeout
import orjson
import pytest
from redis.asyncio import Redis

from pinrelay.channels.backplane import InMemoryBackplane, RedisBackplane
from pinrelay.channels.connections import ConnectionManager, Frame
from pinrelay.exceptions import InvalidFrame

REDIS_URL = "redis://localhost:7379"


class FakeWebSocket:
    def __init__(self, fail_first: int = 0):
        self.sent = []
        self._fail = fail_first

    async def send_text(self, text: str):
        if self._fail:
            self._fail -= 1
            raise RuntimeError("socket is closing")
        self.sent.append(orjson.loads(text))


async def _wait_for(predicate, timeout: float = 1.0):
    async with async_timeout.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def test_frame_parsing():
    frame = Frame.parse({"t": "enter-pin", "d": "4242", "id": 5})
    assert frame.msg_type == "enter-pin"
    assert frame.data == "4242"
    assert frame.message_id == 5
    assert Frame(t="pong", id=5).dump() == {"t": "pong", "id": 5}

    with pytest.raises(InvalidFrame):
        Frame.parse(["t", "enter-pin"])
    with pytest.raises(InvalidFrame):
        Frame.parse({"d": "4242"})


@pytest.mark.asyncio
async def test_send_reaches_only_addressed_connection():
    manager = ConnectionManager(InMemoryBackplane())
    await manager.start()
    first_ws, second_ws = FakeWebSocket(), FakeWebSocket()

    async with manager.connect(first_ws) as first:
        async with manager.connect(second_ws):
            assert len(manager) == 2
            await manager.send(first.id, "force-logout", {"pin": "4242"})
            await _wait_for(lambda: first_ws.sent)

    assert first_ws.sent == [{"t": "force-logout", "d": {"pin": "4242"}}]
    assert second_ws.sent == []
    assert len(manager) == 0
    assert first.id not in manager

    # the connection is gone, nothing to deliver to
    await manager.send(first.id, "force-logout", {"pin": "4242"})
    await manager.stop()


@pytest.mark.asyncio
async def test_failed_write_does_not_stop_the_writer():
    manager = ConnectionManager(InMemoryBackplane())
    ws = FakeWebSocket(fail_first=1)

    async with manager.connect(ws) as connection:
        await connection.send("pong", ack=1)
        await connection.send("pong", ack=2)
        await _wait_for(lambda: ws.sent)

    assert ws.sent == [{"t": "pong", "id": 2}]


async def _redis_available(url: str) -> bool:
    redis = Redis.from_url(url)
    try:
        async with async_timeout.timeout(1):
            await redis.ping()
        return True
    except Exception:
        return False
    finally:
        await redis.aclose()


@pytest.mark.asyncio
async def test_eviction_crosses_processes_through_redis():
    if not await _redis_available(REDIS_URL):
        pytest.skip(
            "Redis is not running, please run redis on port 7379:"
            " sudo docker run -p 7379:6379 redis"
        )

    here = ConnectionManager(RedisBackplane(Redis.from_url(REDIS_URL)))
    there = ConnectionManager(RedisBackplane(Redis.from_url(REDIS_URL)))
    await here.start()
    await there.start()
    try:
        ws = FakeWebSocket()
        async with there.connect(ws) as remote:
            assert remote.id not in here
            await here.send(remote.id, "force-logout", {"pin": "4242"})
            await _wait_for(lambda: ws.sent, timeout=2.0)

        assert ws.sent == [{"t": "force-logout", "d": {"pin": "4242"}}]
    finally:
        await here.stop()
        await there.stop()
