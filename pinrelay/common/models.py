import time
from datetime import datetime, timezone

from beanie import Document
from pydantic import BaseModel as _BaseModel
from pydantic import ConfigDict

__all__ = (
    "BaseDocument",
    "AppBaseModel",
    "utcnow",
    "timestamp_ms",
)


def utcnow() -> datetime:
    # naive UTC, the way pymongo hands datetimes back by default
    return datetime.now(timezone.utc).replace(tzinfo=None)


def timestamp_ms() -> int:
    return int(time.time() * 1000)


class AppBaseModel(_BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BaseDocument(Document):
    model_config = ConfigDict(populate_by_name=True)
