import time
from typing import Any, Callable, Optional

from starlette.testclient import TestClient, WebSocketTestSession

from pinrelay.app import PinRelayApp


def enter_pin(
    ws: WebSocketTestSession, pin: Any, message_id: Optional[Any] = None
) -> dict:
    message = {"t": "enter-pin", "d": pin}
    if message_id is not None:
        message["id"] = message_id
    ws.send_json(message)
    return ws.receive_json()


def lookup(client: TestClient, registry, pin: str):
    return client.portal.call(registry.find_by_pin, pin)


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def create_test_app(settings, registry=None):
    return PinRelayApp(settings, registry=registry)
