import asyncio
from datetime import datetime, timedelta

import pytest

from pinrelay.exceptions import InvalidPin
from pinrelay.sessions.in_memory import InMemorySessionRegistry
from pinrelay.sessions.models import SESSION_TTL, ClaimOutcome


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def registry(clock):
    return InMemorySessionRegistry(sweep_interval=0, clock=clock)


@pytest.mark.asyncio
async def test_claim_fresh_pin_creates_session(registry):
    result = await registry.claim("4242", "conn-a")
    assert result.outcome == ClaimOutcome.CREATED
    assert result.previous_connection_id is None

    session = await registry.find_by_pin("4242")
    assert session is not None
    assert session.connection_id == "conn-a"


@pytest.mark.asyncio
async def test_claim_by_other_connection_transfers(registry, clock):
    await registry.claim("4242", "conn-a")
    clock.advance(timedelta(minutes=30))

    result = await registry.claim("4242", "conn-b")
    assert result.outcome == ClaimOutcome.TRANSFERRED
    assert result.previous_connection_id == "conn-a"

    session = await registry.find_by_pin("4242")
    assert session.connection_id == "conn-b"
    assert session.created_at == clock.now


@pytest.mark.asyncio
async def test_claim_by_owner_renews(registry, clock):
    await registry.claim("4242", "conn-a")
    clock.advance(timedelta(minutes=59))

    result = await registry.claim("4242", "conn-a")
    assert result.outcome == ClaimOutcome.RENEWED
    assert result.previous_connection_id is None

    clock.advance(timedelta(minutes=30))
    session = await registry.find_by_pin("4242")
    assert session is not None
    assert session.connection_id == "conn-a"


@pytest.mark.asyncio
@pytest.mark.parametrize("pin", ["12", "abcd", "12345678901", 4242, None])
async def test_invalid_pin_does_not_mutate(registry, pin):
    with pytest.raises(InvalidPin):
        await registry.claim(pin, "conn-a")
    assert registry._sessions == {}


@pytest.mark.asyncio
async def test_release_only_removes_own_sessions(registry):
    await registry.claim("1111", "conn-a")
    await registry.claim("2222", "conn-a")
    await registry.claim("3333", "conn-b")

    assert await registry.release_by_connection("conn-a") == 2
    assert await registry.find_by_pin("1111") is None
    assert await registry.find_by_pin("2222") is None
    session = await registry.find_by_pin("3333")
    assert session.connection_id == "conn-b"


@pytest.mark.asyncio
async def test_release_is_idempotent(registry):
    await registry.claim("1111", "conn-a")
    assert await registry.release_by_connection("conn-a") == 1
    assert await registry.release_by_connection("conn-a") == 0
    assert await registry.release_by_connection("never-seen") == 0


@pytest.mark.asyncio
async def test_release_after_takeover_keeps_new_owner(registry):
    await registry.claim("4242", "conn-a")
    await registry.claim("4242", "conn-b")

    assert await registry.release_by_connection("conn-a") == 0
    session = await registry.find_by_pin("4242")
    assert session.connection_id == "conn-b"


@pytest.mark.asyncio
async def test_expired_session_is_unreachable(registry, clock):
    await registry.claim("4242", "conn-a")

    clock.advance(SESSION_TTL - timedelta(seconds=1))
    assert await registry.find_by_pin("4242") is not None

    clock.advance(timedelta(seconds=1))
    assert await registry.find_by_pin("4242") is None


@pytest.mark.asyncio
async def test_claim_of_expired_session_counts_as_created(registry, clock):
    await registry.claim("4242", "conn-a")
    clock.advance(SESSION_TTL + timedelta(minutes=1))

    result = await registry.claim("4242", "conn-b")
    assert result.outcome == ClaimOutcome.CREATED
    assert result.previous_connection_id is None


@pytest.mark.asyncio
async def test_sweep_removes_expired_sessions(registry, clock):
    await registry.claim("1111", "conn-a")
    clock.advance(timedelta(minutes=45))
    await registry.claim("2222", "conn-b")
    clock.advance(timedelta(minutes=15))

    assert registry.sweep() == 1
    assert set(registry._sessions) == {"2222"}
    assert "1111" not in registry._locks


@pytest.mark.asyncio
async def test_concurrent_claims_resolve_to_single_owner(registry):
    connection_ids = [f"conn-{i}" for i in range(20)]
    results = await asyncio.gather(
        *(registry.claim("4242", cid) for cid in connection_ids)
    )

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ClaimOutcome.CREATED) == 1
    assert outcomes.count(ClaimOutcome.TRANSFERRED) == 19

    evicted = [
        r.previous_connection_id for r in results if r.previous_connection_id
    ]
    # every owner but the last one was evicted exactly once
    assert len(evicted) == len(set(evicted)) == 19
    session = await registry.find_by_pin("4242")
    assert session.connection_id not in evicted
    assert set(evicted) | {session.connection_id} == set(connection_ids)


@pytest.mark.asyncio
async def test_sweeper_task_lifecycle():
    registry = InMemorySessionRegistry(
        ttl=timedelta(milliseconds=50), sweep_interval=0.02
    )
    await registry.start()
    try:
        await registry.claim("4242", "conn-a")
        await asyncio.sleep(0.2)
        assert registry._sessions == {}
    finally:
        await registry.stop()
    assert registry._sweeper is None
