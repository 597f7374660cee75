import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

import motor.motor_asyncio
import pymongo
from beanie import Indexed
from pydantic import Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from pinrelay.common.models import BaseDocument, utcnow
from pinrelay.database import init_database, register_model
from pinrelay.exceptions import RegistryError, UniquenessConflict
from pinrelay.sessions.models import (
    SESSION_TTL,
    ClaimResult,
    Session,
    resolve_claim,
)
from pinrelay.sessions.registry import SessionRegistry

_logger = logging.getLogger("pinrelay.sessions")


@register_model
class PinSession(BaseDocument):
    pin: Indexed(str, unique=True)
    connection_id: Indexed(str)
    created_at: datetime = Field(default_factory=utcnow)

    def to_session(self) -> Session:
        return Session(
            pin=self.pin,
            connection_id=self.connection_id,
            created_at=self.created_at,
        )

    @classmethod
    async def on_database_ready(cls, stale_sessions_policy: str = "keep"):
        query = cls.find({})
        stale_sessions = await query.count()
        if stale_sessions > 0:
            _logger.warning(
                "There's %d session(s) in the database, this means that"
                " either there's more than 1 instance running with this"
                " database or the previous process exited without cleaning up",
                stale_sessions,
            )
            if stale_sessions_policy == "remove":
                _logger.warning(
                    'stale_sessions_policy is set to "remove", all stale'
                    " sessions will be removed"
                )
                await query.delete()

    class Settings:
        name = "sessions"
        indexes = [
            pymongo.IndexModel(
                "created_at",
                name="created_at_ttl",
                expireAfterSeconds=int(SESSION_TTL.total_seconds()),
            )
        ]


def _from_raw(document: Optional[dict]) -> Optional[Session]:
    if document is None:
        return None
    return Session(
        pin=document["pin"],
        connection_id=document["connection_id"],
        created_at=document["created_at"],
    )


class MongoSessionRegistry(SessionRegistry):
    """
    Sessions stored in MongoDB. Uniqueness of PINs is enforced by a unique
    index, expiry by a TTL index on ``created_at``. The TTL monitor only runs
    once a minute, so lookups also filter out sessions that are past their
    lifetime but not deleted yet.

    The database may be down when the process starts. Initialization is
    retried by every operation until it succeeds, and until then operations
    raise RegistryError.
    """

    def __init__(
        self,
        client: motor.motor_asyncio.AsyncIOMotorClient,
        db_name: str,
        stale_sessions_policy: str = "keep",
        ttl: timedelta = SESSION_TTL,
    ):
        super(MongoSessionRegistry, self).__init__(ttl)
        self._client = client
        self._db_name = db_name
        self._stale_sessions_policy = stale_sessions_policy
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def start(self):
        try:
            await self._ensure_ready()
        except RegistryError as exc:
            _logger.error("%s, will retry on the next request", exc)

    async def _ensure_ready(self):
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            try:
                await init_database(
                    self._client,
                    self._db_name,
                    stale_sessions_policy=self._stale_sessions_policy,
                )
            except PyMongoError as exc:
                raise RegistryError(
                    f"database is not available: {exc}"
                ) from exc
            self._ready = True

    async def stop(self):
        self._client.close()

    async def ping(self):
        await self._client.admin.command({"ping": 1})

    def _cutoff(self) -> datetime:
        return utcnow() - self.ttl

    async def find_by_pin(self, pin: str) -> Optional[Session]:
        await self._ensure_ready()
        try:
            document = await PinSession.find_one(
                {"pin": pin, "created_at": {"$gt": self._cutoff()}}
            )
        except PyMongoError as exc:
            raise RegistryError(f"failed to look up PIN: {exc}") from exc
        return document.to_session() if document else None

    async def _claim(self, pin: str, connection_id: str) -> ClaimResult:
        await self._ensure_ready()
        try:
            try:
                return await self._upsert(pin, connection_id)
            except DuplicateKeyError:
                # two upserts for a new PIN both tried to insert, the other
                # one won, so this one is a takeover now
                _logger.info(
                    "lost creation race for pin %s, retrying as transfer", pin
                )
            try:
                return await self._upsert(pin, connection_id)
            except DuplicateKeyError as exc:
                raise UniquenessConflict(pin) from exc
        except PyMongoError as exc:
            raise RegistryError(f"failed to claim PIN: {exc}") from exc

    async def _upsert(self, pin: str, connection_id: str) -> ClaimResult:
        claimed = Session(pin=pin, connection_id=connection_id)
        previous = await PinSession.get_motor_collection().find_one_and_update(
            {"pin": pin},
            {
                "$set": {
                    "connection_id": connection_id,
                    "created_at": claimed.created_at,
                }
            },
            upsert=True,
            return_document=ReturnDocument.BEFORE,
        )
        return resolve_claim(_from_raw(previous), claimed, self.ttl)

    async def release_by_connection(self, connection_id: str) -> int:
        await self._ensure_ready()
        try:
            result = await PinSession.find(
                {"connection_id": connection_id}
            ).delete()
        except PyMongoError as exc:
            raise RegistryError(f"failed to release sessions: {exc}") from exc
        return result.deleted_count if result else 0
