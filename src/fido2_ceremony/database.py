"""Database module for the FIDO2 ceremony engine."""

import asyncio
from contextlib import asynccontextmanager
import time
from typing import AsyncIterator, Optional

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from fido2_ceremony.config import settings
from fido2_ceremony.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3
        # True when connected to a replica set or mongos
        self.transactions_supported: Optional[bool] = None

    def _connection_string(self) -> str:
        if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
            password = settings.MONGODB_PASSWORD.get_secret_value()
            return (
                f"mongodb://{settings.MONGODB_USERNAME}:{password}@"
                f"{settings.MONGODB_URL.replace('mongodb://', '')}"
            )
        return settings.MONGODB_URL

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                self.client = AsyncIOMotorClient(
                    self._connection_string(),
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                try:
                    hello = await self.client.admin.command({"hello": 1})
                    # setName: replica set member, msg == isdbgrid: mongos
                    self.transactions_supported = bool(hello.get("setName") or hello.get("msg") == "isdbgrid")
                except PyMongoError:
                    self.transactions_supported = False

                perf_logger.info(
                    "MongoDB connection established in %.3fs (ping: %.3fs)", time.time() - start_time, ping_duration
                )
                db_logger.info(
                    "Connected to MongoDB database: %s (transactions: %s)",
                    settings.MONGODB_DATABASE,
                    self.transactions_supported,
                )
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                perf_logger.warning(
                    "Connection attempt %d failed after %.3fs", attempt + 1, time.time() - attempt_start
                )
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client is None:
            db_logger.warning("Disconnect called but no active MongoDB connection found")
            return
        self.client.close()
        self.client = None
        self.database = None
        db_logger.info("Successfully disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check database connection health"""
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False
        try:
            await self.client.admin.command("ping")
            return True
        except (ServerSelectionTimeoutError, ConnectionFailure) as e:
            health_logger.error("Database health check failed: %s", e)
            return False

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def create_indexes(self):
        """Create indexes used by ceremony lookups"""
        start_time = time.time()
        db_logger.info("Starting database index creation process")

        challenges = self.get_collection(settings.CHALLENGE_COLLECTION)
        await challenges.create_index(
            [("principal_id", ASCENDING), ("type", ASCENDING), ("used", ASCENDING), ("created_at", DESCENDING)],
            name="principal_type_used_created",
        )

        credentials = self.get_collection(settings.CREDENTIAL_COLLECTION)
        await credentials.create_index([("principal_id", ASCENDING)], name="principal_id")

        principals = self.get_collection(settings.PRINCIPAL_COLLECTION)
        await principals.create_index([("login", ASCENDING)], name="login_unique", unique=True)

        perf_logger.info("Index creation completed in %.3fs", time.time() - start_time)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """
        Yield a session bound to a MongoDB transaction.

        Yields None when the server does not support transactions; callers then
        run their writes unbound, in order.
        """
        if self.client is None or not self.transactions_supported:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session


# Global database manager instance
db_manager = DatabaseManager()
