import enum
from typing import List, Optional

from fastapi import Depends, FastAPI
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ("Settings", "DebugSettings", "TestingSettings", "get_settings")


from pinrelay.dependencies import get_application


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="pinrelay_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # database and other connections
    mongodb_db_name: str = "pinAuth"
    db_url: str = Field(
        "mongodb://127.0.0.1:27017",
        validation_alias=AliasChoices("pinrelay_db_url", "mongodb_uri"),
    )
    db_timeout_ms: int = 5000
    redis_url: str = "redis://127.0.0.1:6379"

    # access control
    client_url: str = Field(
        "http://localhost:3000",
        validation_alias=AliasChoices("pinrelay_client_url", "client_url"),
    )
    cors_origins: List[str] = []

    class RegistryBackend(str, enum.Enum):
        MONGODB = "mongodb"
        MEMORY = "memory"

    class BackplaneBackend(str, enum.Enum):
        REDIS = "redis"
        MEMORY = "memory"

    registry_backend: RegistryBackend = RegistryBackend.MONGODB
    backplane_backend: BackplaneBackend = BackplaneBackend.MEMORY

    # sessions
    stale_sessions_policy: str = "keep"
    session_sweep_interval: float = 5.0

    # other
    environment: str = "production"

    # spa
    spa_path: Optional[str] = None

    @property
    def allowed_origins(self) -> List[str]:
        origins = [self.client_url] if self.client_url else []
        return origins + [o for o in self.cors_origins if o not in origins]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class DebugSettings(Settings):
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ]
    environment: str = "development"


class TestingSettings(Settings):
    registry_backend: Settings.RegistryBackend = (
        Settings.RegistryBackend.MEMORY
    )
    backplane_backend: Settings.BackplaneBackend = (
        Settings.BackplaneBackend.MEMORY
    )
    environment: str = "testing"


def get_settings(app: FastAPI = Depends(get_application)) -> Settings:
    return app.state.settings
