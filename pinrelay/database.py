import inspect
import logging
from typing import TypeVar

import motor.motor_asyncio
from beanie import Document, init_beanie
from motor.core import AgnosticDatabase

_models = set()
_logger = logging.getLogger("pinrelay.database")


TModelType = TypeVar("TModelType")  # bound=Type[Document]


def register_model(model: TModelType) -> TModelType:
    assert issubclass(model, Document), "model must subclass Document type"
    _models.add(model)
    return model


def create_motor_client(
    db_url: str, timeout_ms: int = 5000
) -> motor.motor_asyncio.AsyncIOMotorClient:
    return motor.motor_asyncio.AsyncIOMotorClient(
        db_url,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
    )


async def init_database(
    client: motor.motor_asyncio.AsyncIOMotorClient,
    db_name: str,
    **ready_kwargs,
) -> AgnosticDatabase:
    """
    Initializes beanie with every registered model and then calls
    ``on_database_ready`` on the models that define it. Keyword arguments are
    passed through to those hooks.
    """
    _logger.info("initializing database... (db_name=%s)", db_name)
    db = client[db_name]
    _logger.debug(
        f'initializing models: {", ".join(m.__name__ for m in _models)} ...'
    )
    await init_beanie(database=db, document_models=list(_models))

    for model in _models:
        if hasattr(model, "on_database_ready") and inspect.iscoroutinefunction(
            getattr(model, "on_database_ready")
        ):
            try:
                await model.on_database_ready(**ready_kwargs)
            except Exception:
                _logger.exception(
                    "on_database_ready of %s has failed", model.__name__
                )
    return db
