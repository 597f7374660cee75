import json
import logging
from typing import Awaitable, Callable, Dict

from fastapi import APIRouter, Depends
from starlette.status import WS_1008_POLICY_VIOLATION, WS_1011_INTERNAL_ERROR
from starlette.websockets import WebSocket, WebSocketDisconnect

from pinrelay.channels.connections import (
    Connection,
    ConnectionManager,
    Frame,
    get_connection_manager,
)
from pinrelay.common.models import timestamp_ms
from pinrelay.exceptions import InvalidFrame, InvalidPin
from pinrelay.sessions.models import ClaimOutcome, validate_pin
from pinrelay.sessions.registry import SessionRegistry, get_registry
from pinrelay.settings import Settings, get_settings

_logger = logging.getLogger("pinrelay.router")

ws_router = APIRouter()

FORCE_LOGOUT_MESSAGE = "Logged in from another device"
PIN_ERROR_MESSAGE = "Error processing PIN"


class PinHub:
    """
    Per-connection message router. Every ``enter-pin`` gets exactly one
    ``pin-status`` reply; a takeover additionally sends ``force-logout`` to
    the previous owner.
    """

    def __init__(
        self,
        connection: Connection,
        registry: SessionRegistry,
        connections: ConnectionManager,
    ):
        self.connection = connection
        self.registry = registry
        self.connections = connections
        self._handlers: Dict[str, Callable[[Frame], Awaitable[None]]] = {
            "enter-pin": self.enter_pin,
            "ping": self.ping,
        }

    async def run(self):
        while True:
            try:
                frame = await self._receive()
            except InvalidFrame as exc:
                await self.connection.send(
                    "error",
                    {"error_type": "invalid_message", "error": str(exc)},
                )
                continue

            handler = self._handlers.get(frame.msg_type)
            if handler is None:
                _logger.debug("unknown message type %r", frame.msg_type)
                continue
            try:
                await handler(frame)
            except Exception as exc:
                _logger.exception("%s handler failed: %s", frame.msg_type, exc)
                await self.connection.send(
                    "error",
                    {"error_type": "internal", "error": "internal error"},
                    ack=frame.message_id,
                )

    async def _receive(self) -> Frame:
        try:
            payload = await self.connection.websocket.receive_json()
        except json.JSONDecodeError:
            raise InvalidFrame("message is not valid JSON")
        except KeyError:
            # binary frame, receive_json only reads the "text" key
            raise InvalidFrame("binary messages are not supported")
        return Frame.parse(payload)

    async def on_disconnected(self):
        _logger.info("Client disconnected: %s", self.connection.id)
        try:
            released = await self.registry.release_by_connection(
                self.connection.id
            )
        except Exception as err:
            _logger.error(
                "failed to release sessions of connection %s: %s: %s",
                self.connection.id,
                type(err).__name__,
                err,
            )
            return
        if released:
            _logger.debug(
                "released %d session(s) of %s", released, self.connection.id
            )

    async def enter_pin(self, frame: Frame):
        try:
            pin = validate_pin(frame.data)
        except InvalidPin as exc:
            await self._pin_status(frame, status="error", message=exc.reason)
            return

        try:
            result = await self.registry.claim(pin, self.connection.id)
        except Exception as exc:
            _logger.exception("Error handling PIN: %s", exc)
            await self._pin_status(
                frame, status="error", message=PIN_ERROR_MESSAGE
            )
            return

        if result.outcome == ClaimOutcome.TRANSFERRED:
            await self._evict(result.previous_connection_id, pin)
            await self._pin_status(frame, status="overwritten", pin=pin)
        else:
            await self._pin_status(frame, status="success", pin=pin)

    async def ping(self, frame: Frame):
        if frame.message_id is not None:
            await self.connection.send("pong", ack=frame.message_id)

    async def _pin_status(self, frame: Frame, **data):
        await self.connection.send("pin-status", data, ack=frame.message_id)

    async def _evict(self, connection_id: str, pin: str):
        try:
            await self.connections.send(
                connection_id,
                "force-logout",
                {
                    "message": FORCE_LOGOUT_MESSAGE,
                    "pin": pin,
                    "timestamp": timestamp_ms(),
                },
            )
        except Exception as exc:
            _logger.warning(
                "failed to notify connection %s about eviction: %s: %s",
                connection_id,
                type(exc).__name__,
                exc,
            )


async def _reject(websocket: WebSocket, origin: str):
    _logger.warning("rejected connection from origin %s", origin)
    await websocket.accept()
    error = Frame(
        t="error",
        d={
            "error_type": "origin_rejected",
            "error": f"origin {origin} is not allowed",
        },
    )
    await websocket.send_text(error.encode())
    await websocket.close(WS_1008_POLICY_VIOLATION)


@ws_router.websocket("/ws", name="pin_hub")
async def pin_hub(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_registry),
    connections: ConnectionManager = Depends(get_connection_manager),
    settings: Settings = Depends(get_settings),
):
    origin = websocket.headers.get("origin")
    if origin and origin not in settings.allowed_origins:
        await _reject(websocket, origin)
        return

    await websocket.accept()
    async with connections.connect(websocket) as connection:
        hub = PinHub(connection, registry, connections)
        client = websocket.client.host if websocket.client else None
        _logger.info("New client connected: %s (%s)", connection.id, client)
        try:
            await hub.run()
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            _logger.exception("connection %s failed: %s", connection.id, exc)
            await websocket.close(WS_1011_INTERNAL_ERROR)
        finally:
            await hub.on_disconnected()
