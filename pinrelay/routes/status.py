import time

import async_timeout
from fastapi import APIRouter, Depends

from pinrelay.channels.connections import (
    ConnectionManager,
    get_connection_manager,
)
from pinrelay.common.models import timestamp_ms
from pinrelay.sessions.registry import SessionRegistry, get_registry

api_router = APIRouter()


@api_router.get("/status")
async def status():
    return {"status": "ok", "timestamp": timestamp_ms()}


async def _module_hc(module) -> dict:
    now = time.time_ns()
    try:
        async with async_timeout.timeout(0.5):
            await module.ping()
        latency = (time.time_ns() - now) / 1000000
        d = {
            "healthy": True,
            "latency_ms": latency,
        }
    except Exception as exc:
        d = {"healthy": False, "exception": {"type": type(exc).__name__}}

    return {"type": type(module).__name__, "status": d}


@api_router.get("/hc")
async def health_check(
    connections: ConnectionManager = Depends(get_connection_manager),
    registry: SessionRegistry = Depends(get_registry),
):
    return {
        "modules": {
            "backplane": await _module_hc(connections.backplane),
            "session_registry": await _module_hc(registry),
        }
    }
