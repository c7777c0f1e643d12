"""Principal lookup and creation for ceremonies."""

from datetime import datetime, timezone
from typing import Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorCollection

from fido2_ceremony.config import settings
from fido2_ceremony.database import db_manager
from fido2_ceremony.managers.logging_manager import get_logger
from fido2_ceremony.models import Principal
from fido2_ceremony.utils.logging_utils import log_database_operation

logger = get_logger(prefix="[WebAuthn Principals]")

COLLECTION_NAME = settings.PRINCIPAL_COLLECTION


class PrincipalDirectory(Protocol):
    async def find_by_id(self, principal_id: str) -> Optional[Principal]: ...

    async def find_by_login(self, login: str) -> Optional[Principal]: ...

    async def insert(self, login: str, display_name: str) -> Principal: ...


class MongoPrincipalDirectory:
    """PrincipalDirectory over the ``principals`` collection.

    Inactive principals are treated as absent.
    """

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        self._collection = collection

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            return db_manager.get_collection(COLLECTION_NAME)
        return self._collection

    @log_database_operation(COLLECTION_NAME, "find_one")
    async def find_by_id(self, principal_id: str) -> Optional[Principal]:
        try:
            oid = ObjectId(principal_id)
        except (InvalidId, TypeError):
            logger.debug("Rejected malformed principal id: %s", principal_id)
            return None
        doc = await self.collection.find_one({"_id": oid, "is_active": {"$ne": False}})
        return Principal.from_document(doc) if doc else None

    @log_database_operation(COLLECTION_NAME, "find_one")
    async def find_by_login(self, login: str) -> Optional[Principal]:
        doc = await self.collection.find_one({"login": login, "is_active": {"$ne": False}})
        return Principal.from_document(doc) if doc else None

    @log_database_operation(COLLECTION_NAME, "insert")
    async def insert(self, login: str, display_name: str) -> Principal:
        if not login:
            raise ValueError("login is required")
        now = datetime.now(timezone.utc)
        doc = {
            "login": login,
            "display_name": display_name or login,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info("Created principal %s (%s)", result.inserted_id, login)
        return Principal.from_document(doc)
