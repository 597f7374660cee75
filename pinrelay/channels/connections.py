import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Union

import nanoid
from fastapi import Depends, FastAPI
from pydantic import Field, ValidationError
from starlette.websockets import WebSocket

from pinrelay.channels.backplane import BackplaneBase
from pinrelay.common.models import AppBaseModel
from pinrelay.dependencies import get_application
from pinrelay.exceptions import InvalidFrame

_logger = logging.getLogger("pinrelay.connections")


class Frame(AppBaseModel):
    """
    One websocket message: ``{"t": type, "d": data, "id": message id}``.
    Replies carry the id of the message they answer.
    """

    msg_type: str = Field(alias="t")
    data: Any = Field(None, alias="d")
    message_id: Optional[Union[int, str]] = Field(None, alias="id")

    @classmethod
    def parse(cls, payload: Any) -> "Frame":
        if not isinstance(payload, dict):
            raise InvalidFrame("message must be a JSON object")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise InvalidFrame(str(exc)) from exc

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def encode(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class Connection:
    """
    Outgoing side of a websocket. Frames are queued and written by a single
    writer task, so handlers and evictions never interleave partial sends.
    """

    def __init__(self, websocket: WebSocket):
        self.id = nanoid.generate()
        self.websocket = websocket
        self._outbox: "asyncio.Queue[Frame]" = asyncio.Queue()

    async def push(self, frame: Frame):
        await self._outbox.put(frame)

    async def send(self, msg_type: str, data: Any = None, ack=None):
        await self.push(Frame(t=msg_type, d=data, id=ack))

    async def writer_loop(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send_text(frame.encode())
            except Exception as exc:
                _logger.warning(
                    "failed to send %s to %s: %s: %s",
                    frame.msg_type,
                    self.id,
                    type(exc).__name__,
                    exc,
                )


class ConnectionManager:
    """
    Connections of this process keyed by id. ``send`` is best effort: a
    frame for an id that is not here goes to the backplane, and a frame for
    an id that no longer exists anywhere is dropped.
    """

    def __init__(self, backplane: BackplaneBase):
        self.backplane = backplane
        self._connections: Dict[str, Connection] = {}

    def __len__(self):
        return len(self._connections)

    def __contains__(self, connection_id: str):
        return connection_id in self._connections

    async def start(self):
        await self.backplane.start(self._deliver)

    async def stop(self):
        await self.backplane.stop()

    @asynccontextmanager
    async def connect(self, websocket: WebSocket) -> AsyncIterator[Connection]:
        connection = Connection(websocket)
        self._connections[connection.id] = connection
        writer = asyncio.create_task(connection.writer_loop())
        try:
            yield connection
        finally:
            del self._connections[connection.id]
            writer.cancel()

    async def send(self, connection_id: str, msg_type: str, data: Any = None):
        frame = Frame(t=msg_type, d=data)
        connection = self._connections.get(connection_id)
        if connection is not None:
            await connection.push(frame)
        else:
            await self.backplane.publish(connection_id, frame.dump())

    async def _deliver(self, connection_id: str, payload: dict):
        connection = self._connections.get(connection_id)
        if connection is not None:
            await connection.push(Frame.model_validate(payload))


async def start_connection_manager(app: FastAPI, backplane: BackplaneBase):
    assert (
        getattr(app.state, "connections", None) is None
    ), "You can't initialize connection manager twice"
    manager = ConnectionManager(backplane)
    # set before start so a failed start is still stopped
    app.state.connections = manager
    await manager.start()


async def stop_connection_manager(app: FastAPI):
    manager = getattr(app.state, "connections", None)
    if manager is not None:
        await manager.stop()
        app.state.connections = None


def get_connection_manager(
    app: FastAPI = Depends(get_application),
) -> ConnectionManager:
    manager = getattr(app.state, "connections", None)
    if manager is None:
        raise RuntimeError(
            f"Connection manager is not initialized on application {app}"
        )
    return manager
