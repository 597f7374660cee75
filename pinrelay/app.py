import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import nanoid
import orjson
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from redis.asyncio import Redis
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request

from pinrelay import VERSION
from pinrelay.channels.backplane import (
    BackplaneBase,
    InMemoryBackplane,
    RedisBackplane,
)
from pinrelay.channels.connections import (
    start_connection_manager,
    stop_connection_manager,
)
from pinrelay.database import create_motor_client
from pinrelay.logging import create_logger, install_fault_handler
from pinrelay.routes import api_router, ws_router
from pinrelay.sessions.in_memory import InMemorySessionRegistry
from pinrelay.sessions.mongo import MongoSessionRegistry
from pinrelay.sessions.registry import (
    SessionRegistry,
    start_registry,
    stop_registry,
)
from pinrelay.settings import DebugSettings, Settings
from pinrelay.spa import SPA


class PinRelayApp(FastAPI):
    def __init__(
        self,
        settings: Settings,
        backplane: Optional[BackplaneBase] = None,
        registry: Optional[SessionRegistry] = None,
        **kwargs,
    ):
        kwargs.setdefault("default_response_class", ORJSONResponse)
        kwargs.setdefault("title", "PinRelay")
        kwargs.setdefault("version", VERSION)
        kwargs.setdefault("lifespan", self._lifespan)
        super(PinRelayApp, self).__init__(**kwargs)
        self.settings = settings
        self.state.settings = settings
        self.logger = logging.getLogger("pinrelay.application")

        self._backplane = backplane
        self._registry = registry
        self._init_middlewares()
        self._init_routers()

        if settings.spa_path:
            self.mount("/", SPA(directory=settings.spa_path), name="spa")
        else:
            self.add_api_route("/", self._index)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self._on_startup()
        try:
            yield
        finally:
            await self._on_shutdown()

    @staticmethod
    async def _generate_request_id(request: Request, call_next):
        request.scope["request-id"] = nanoid.generate()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.scope["request-id"]
        return response

    @staticmethod
    async def _index():
        return {"detail": "PIN Auth Server"}

    def _create_backplane(self) -> BackplaneBase:
        if self._backplane is not None:
            return self._backplane
        backend = self.settings.backplane_backend
        if backend == Settings.BackplaneBackend.REDIS:
            return RedisBackplane(Redis.from_url(self.settings.redis_url))
        elif backend == Settings.BackplaneBackend.MEMORY:
            return InMemoryBackplane()
        raise RuntimeError(f"unknown backplane_backend: {backend}")

    def _create_registry(self) -> SessionRegistry:
        if self._registry is not None:
            return self._registry
        backend = self.settings.registry_backend
        if backend == Settings.RegistryBackend.MONGODB:
            return MongoSessionRegistry(
                create_motor_client(
                    self.settings.db_url, self.settings.db_timeout_ms
                ),
                self.settings.mongodb_db_name,
                stale_sessions_policy=self.settings.stale_sessions_policy,
            )
        elif backend == Settings.RegistryBackend.MEMORY:
            return InMemorySessionRegistry(
                sweep_interval=self.settings.session_sweep_interval
            )
        raise RuntimeError(f"unknown registry_backend: {backend}")

    async def _on_startup(self):
        self.logger.info(f"RUNNING PINRELAY VERSION {VERSION}")
        settings = self.settings
        self.logger.info(f"\tenvironment = {settings.environment}")
        self.logger.info(f"\tallowed_origins = {settings.allowed_origins}")
        self.logger.info(f"\tregistry = {settings.registry_backend.value}")
        self.logger.info(f"\tbackplane = {settings.backplane_backend.value}")
        if settings.registry_backend == Settings.RegistryBackend.MONGODB:
            self.logger.info(f"\tdb_url = {settings.db_url}")

        install_fault_handler()
        try:
            await start_connection_manager(self, self._create_backplane())
            await start_registry(self, self._create_registry())
        except Exception as exc:
            self.logger.exception(str(exc))
            await self._stop_components()
            raise

    async def _on_shutdown(self):
        await self._stop_components()

    async def _stop_components(self):
        for stop in (stop_registry, stop_connection_manager):
            try:
                await stop(self)
            except Exception as exc:
                self.logger.exception(str(exc))

    def _init_routers(self):
        self.include_router(api_router, prefix="/api")
        self.include_router(ws_router)

    def _init_middlewares(self):
        self.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type"],
        )
        self.middleware("http")(self._generate_request_id)


def create_production_app():
    create_logger()
    return PinRelayApp(Settings())


def create_debug_app():
    class ORJSONIdentResponse(ORJSONResponse):
        def render(self, content: Any) -> bytes:
            return orjson.dumps(content, option=orjson.OPT_INDENT_2)

    create_logger()
    app = PinRelayApp(
        DebugSettings(), default_response_class=ORJSONIdentResponse
    )
    return app
