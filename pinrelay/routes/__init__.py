from pinrelay.routes.pin_hub import PinHub, ws_router
from pinrelay.routes.status import api_router

__all__ = ("ws_router", "PinHub", "api_router")
