"""
WebAuthn challenge storage service.

Challenges are stored in MongoDB keyed by the challenge value produced by the
verifier. A challenge is single use: ``used`` flips from False to True once,
through a conditional update, and never back. Lookups ignore expired
challenges, and issuing a new challenge expires every unused challenge of the
same principal and ceremony type.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorCollection
from pymongo import DESCENDING

from fido2_ceremony.config import settings
from fido2_ceremony.database import db_manager
from fido2_ceremony.managers.logging_manager import get_logger
from fido2_ceremony.models import ChallengeType, StoredChallenge
from fido2_ceremony.utils.logging_utils import log_database_operation, log_security_event

logger = get_logger(prefix="[WebAuthn Challenge]")

CHALLENGE_EXPIRY_MINUTES = 5
COLLECTION_NAME = settings.CHALLENGE_COLLECTION


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeStore:
    """Persistence for ceremony challenges."""

    def __init__(
        self,
        collection: Optional[AsyncIOMotorCollection] = None,
        clock: Callable[[], datetime] = utc_now,
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
    async def insert(self, challenge: StoredChallenge, session: Optional[AsyncIOMotorClientSession] = None):
        return await self.collection.insert_one(challenge.to_document(), session=session)

    @log_database_operation(COLLECTION_NAME, "find")
    async def find(
        self,
        query: Dict[str, Any],
        limit: Optional[int] = None,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> List[StoredChallenge]:
        cursor = self.collection.find(query, session=session).sort("created_at", DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [StoredChallenge.model_validate(doc) for doc in docs]

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

    async def issue(
        self,
        challenge_id: str,
        principal_id: Optional[str],
        challenge_type: ChallengeType,
    ) -> StoredChallenge:
        """
        Persist a fresh unused challenge.

        Unused challenges of the same principal and type are expired first so
        only the newest one can be finished.
        """
        if not challenge_id:
            raise ValueError("challenge_id is required")

        now = self._clock()
        if principal_id is not None:
            superseded = await self.update(
                {
                    "principal_id": principal_id,
                    "type": challenge_type.value,
                    "used": False,
                    "expires_at": {"$gt": now},
                },
                {"expires_at": now},
            )
            if superseded:
                logger.debug("Expired %d superseded %s challenge(s)", superseded, challenge_type.value)

        challenge = StoredChallenge(
            id=challenge_id,
            principal_id=principal_id,
            type=challenge_type,
            expires_at=now + timedelta(minutes=CHALLENGE_EXPIRY_MINUTES),
            used=False,
            created_at=now,
            updated_at=now,
        )
        await self.insert(challenge)

        log_security_event(
            event_type="webauthn_challenge_stored",
            user_id=principal_id,
            success=True,
            details={
                "challenge_type": challenge_type.value,
                "expires_at": challenge.expires_at.isoformat(),
                "challenge_prefix": challenge_id[:8] + "...",
            },
        )
        return challenge

    async def find_latest_unused(
        self,
        principal_id: str,
        challenge_type: ChallengeType,
    ) -> Optional[StoredChallenge]:
        """Most recent unused, unexpired challenge of a type for a principal."""
        challenges = await self.find(
            {
                "principal_id": principal_id,
                "type": challenge_type.value,
                "used": False,
                "expires_at": {"$gt": self._clock()},
            },
            limit=1,
        )
        return challenges[0] if challenges else None

    @log_database_operation(COLLECTION_NAME, "mark_used")
    async def mark_used(self, challenge_id: str, session: Optional[AsyncIOMotorClientSession] = None) -> bool:
        """
        Flip ``used`` to True.

        Returns False when the challenge was already used, has expired or
        been superseded, or does not exist. Concurrent finishes of one
        challenge therefore have a single winner.
        """
        now = self._clock()
        result = await self.collection.update_one(
            {"_id": challenge_id, "used": False, "expires_at": {"$gt": now}},
            {"$set": {"used": True, "updated_at": now}},
            session=session,
        )
        return result.modified_count == 1
