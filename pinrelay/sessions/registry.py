import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI

from pinrelay.dependencies import get_application
from pinrelay.sessions.models import (
    SESSION_TTL,
    ClaimResult,
    Session,
    validate_pin,
)

_logger = logging.getLogger("pinrelay.sessions")


class SessionRegistry(ABC):
    """
    Single source of truth for PIN ownership. Every PIN maps to at most one
    connection, and operations on the same PIN behave as if serialized.
    """

    def __init__(self, ttl: timedelta = SESSION_TTL):
        self.ttl = ttl

    async def start(self):
        pass

    async def stop(self):
        pass

    @abstractmethod
    async def ping(self):
        ...

    @abstractmethod
    async def find_by_pin(self, pin: str) -> Optional[Session]:
        ...

    async def claim(self, pin: str, connection_id: str) -> ClaimResult:
        """
        Binds the PIN to the connection, creating the session or taking it
        over from its current owner.

        :raises InvalidPin: if the PIN is malformed, nothing is written then
        :raises RegistryError: if the store failed
        """
        pin = validate_pin(pin)
        result = await self._claim(pin, connection_id)
        _logger.debug(
            "pin %s claimed by %s: %s",
            pin,
            connection_id,
            result.outcome.value,
        )
        return result

    @abstractmethod
    async def _claim(self, pin: str, connection_id: str) -> ClaimResult:
        ...

    @abstractmethod
    async def release_by_connection(self, connection_id: str) -> int:
        """
        Removes every session bound to the connection and returns how many
        were removed.
        """


async def start_registry(app: FastAPI, registry: SessionRegistry):
    assert (
        getattr(app.state, "session_registry", None) is None
    ), "You can't initialize session registry twice"
    _logger.debug("starting session registry %s", type(registry).__name__)
    await registry.start()
    app.state.session_registry = registry


async def stop_registry(app: FastAPI):
    registry = getattr(app.state, "session_registry", None)
    if registry:
        _logger.debug("stopping session registry")
        await registry.stop()
        app.state.session_registry = None


def get_registry(app: FastAPI = Depends(get_application)) -> SessionRegistry:
    registry = getattr(app.state, "session_registry", None)
    if registry is None:
        raise RuntimeError(
            f"Session registry is not initialized on application {app}"
        )
    return registry
