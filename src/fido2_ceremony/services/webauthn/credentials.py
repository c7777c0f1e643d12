"""
WebAuthn credential storage service.

Credentials are keyed by the credential id exactly as the client sent it at
registration time. The id is never re-encoded, so later lookups compare the
same string the browser reports.
"""

import base64
from datetime import datetime, timezone
import json
from typing import Any, Callable, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorCollection

from fido2_ceremony.config import settings
from fido2_ceremony.database import db_manager
from fido2_ceremony.managers.logging_manager import get_logger
from fido2_ceremony.models import (
    DEFAULT_TRANSPORTS,
    UNPARSEABLE_TRANSPORTS,
    CredentialDescriptor,
    StoredCredential,
)
from fido2_ceremony.utils.logging_utils import log_database_operation

logger = get_logger(prefix="[WebAuthn Credentials]")

COLLECTION_NAME = settings.CREDENTIAL_COLLECTION


def parse_transports(raw: Optional[str]) -> List[str]:
    """
    Decode stored transports.

    Stored and parseable values are used as is (a non-list decodes to no
    transports), unparseable values fall back to ``internal`` and missing
    values to ``internal`` + ``hybrid``.
    """
    if not raw:
        return list(DEFAULT_TRANSPORTS)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return list(UNPARSEABLE_TRANSPORTS)
    return parsed if isinstance(parsed, list) else []


def encode_public_key(public_key: bytes) -> str:
    return base64.b64encode(public_key).decode("ascii")


def decode_public_key(public_key: str) -> bytes:
    return base64.b64decode(public_key)


class CredentialStore:
    """Persistence for authenticator credentials."""

    def __init__(
        self,
        collection: Optional[AsyncIOMotorCollection] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._collection = collection
        self._clock = clock

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            return db_manager.get_collection(COLLECTION_NAME)
        return self._collection

    # --- generic record operations ---

    @log_database_operation(COLLECTION_NAME, "insert")
    async def insert(self, credential: StoredCredential, session: Optional[AsyncIOMotorClientSession] = None):
        return await self.collection.insert_one(credential.to_document(), session=session)

    @log_database_operation(COLLECTION_NAME, "find")
    async def find(
        self,
        query: Dict[str, Any],
        limit: Optional[int] = None,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> List[StoredCredential]:
        cursor = self.collection.find(query, session=session)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [StoredCredential.model_validate(doc) for doc in docs]

    @log_database_operation(COLLECTION_NAME, "update")
    async def update(
        self,
        query: Dict[str, Any],
        values: Dict[str, Any],
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> int:
        values = {**values, "updated_at": self._clock()}
        result = await self.collection.update_many(query, {"$set": values}, session=session)
        return result.modified_count

    @log_database_operation(COLLECTION_NAME, "delete")
    async def delete(self, query: Dict[str, Any], session: Optional[AsyncIOMotorClientSession] = None) -> int:
        result = await self.collection.delete_many(query, session=session)
        return result.deleted_count

    # --- ceremony operations ---

    async def create(
        self,
        credential_id: str,
        principal_id: str,
        public_key: bytes,
        counter: int,
        transports: Optional[List[str]] = None,
        device_name: Optional[str] = None,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> StoredCredential:
        now = self._clock()
        credential = StoredCredential(
            id=credential_id,
            principal_id=principal_id,
            public_key=encode_public_key(public_key),
            counter=counter,
            transports=json.dumps(list(transports if transports else DEFAULT_TRANSPORTS)),
            device_name=device_name,
            created_at=now,
            updated_at=now,
        )
        await self.insert(credential, session=session)
        logger.info("Stored credential %s for principal %s", _short(credential_id), principal_id)
        return credential

    async def get_by_id(
        self, credential_id: str, session: Optional[AsyncIOMotorClientSession] = None
    ) -> Optional[StoredCredential]:
        """Exact-match lookup; None when absent."""
        found = await self.find({"_id": credential_id}, limit=1, session=session)
        return found[0] if found else None

    async def list_for_principal(self, principal_id: str) -> List[StoredCredential]:
        return await self.find({"principal_id": principal_id})

    async def list_descriptors(self, principal_id: str) -> List[CredentialDescriptor]:
        """Descriptors used for exclude and allow lists."""
        return [
            CredentialDescriptor(id=cred.id, transports=parse_transports(cred.transports))
            for cred in await self.list_for_principal(principal_id)
        ]

    @log_database_operation(COLLECTION_NAME, "update_counter")
    async def update_counter(
        self, credential_id: str, counter: int, session: Optional[AsyncIOMotorClientSession] = None
    ) -> bool:
        """
        Advance the stored counter to ``counter``.

        The write only applies while the stored counter is lower, or when
        both are zero, so a stale ceremony cannot move it backwards.
        Returns False when no credential matched.
        """
        if counter < 0:
            raise ValueError("counter must be non-negative")
        guard = {"counter": 0} if counter == 0 else {"counter": {"$lt": counter}}
        result = await self.collection.update_one(
            {"_id": credential_id, **guard},
            {"$set": {"counter": counter, "updated_at": self._clock()}},
            session=session,
        )
        return result.matched_count == 1


def _short(value: str) -> str:
    return value[:16] + "..." if len(value) > 16 else value
