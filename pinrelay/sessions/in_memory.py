import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pinrelay.common.models import utcnow
from pinrelay.sessions.models import (
    SESSION_TTL,
    ClaimResult,
    Session,
    resolve_claim,
)
from pinrelay.sessions.registry import SessionRegistry

_logger = logging.getLogger("pinrelay.sessions")


class InMemorySessionRegistry(SessionRegistry):
    """
    Keeps sessions in a dict. Expired sessions are hidden on read and removed
    by a periodic sweep. Suitable for tests and single-process deployments
    only: sessions do not survive a restart and are not shared.
    """

    def __init__(
        self,
        ttl: timedelta = SESSION_TTL,
        sweep_interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        super(InMemorySessionRegistry, self).__init__(ttl)
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None
        self._clock = clock

    async def start(self):
        if self._sweeper is None and self._sweep_interval > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def ping(self):
        pass

    def _lock_for(self, pin: str) -> asyncio.Lock:
        lock = self._locks.get(pin)
        if lock is None:
            lock = self._locks[pin] = asyncio.Lock()
        return lock

    def _live(self, pin: str) -> Optional[Session]:
        session = self._sessions.get(pin)
        if session is not None and session.is_expired(self._clock(), self.ttl):
            return None
        return session

    async def find_by_pin(self, pin: str) -> Optional[Session]:
        session = self._live(pin)
        return session.model_copy() if session else None

    async def _claim(self, pin: str, connection_id: str) -> ClaimResult:
        async with self._lock_for(pin):
            previous = self._sessions.get(pin)
            claimed = Session(
                pin=pin, connection_id=connection_id, created_at=self._clock()
            )
            self._sessions[pin] = claimed
            return resolve_claim(previous, claimed.model_copy(), self.ttl)

    async def release_by_connection(self, connection_id: str) -> int:
        pins = [
            pin
            for pin, session in self._sessions.items()
            if session.connection_id == connection_id
        ]
        removed = 0
        for pin in pins:
            async with self._lock_for(pin):
                session = self._sessions.get(pin)
                # might have been taken over while waiting for the lock
                if session and session.connection_id == connection_id:
                    del self._sessions[pin]
                    removed += 1
        return removed

    def sweep(self) -> int:
        now = self._clock()
        expired = [
            pin
            for pin, session in self._sessions.items()
            if session.is_expired(now, self.ttl)
        ]
        for pin in expired:
            lock = self._locks.get(pin)
            if lock is None or not lock.locked():
                del self._sessions[pin]
        for pin in [p for p in self._locks if p not in self._sessions]:
            if not self._locks[pin].locked():
                del self._locks[pin]
        return len(expired)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                removed = self.sweep()
            except Exception:
                _logger.exception("session sweep failed")
                continue
            if removed:
                _logger.debug("swept %d expired session(s)", removed)
