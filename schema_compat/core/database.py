"""
Database configuration with connection pooling and index management.

This module provides:
- Optimized MongoDB connections with connection pooling, one client per environment
- Creation of the indexes new-schema queries and migration bookkeeping rely on
- Database health monitoring utilities
"""
import asyncio
from typing import Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, IndexModel
from pymongo.errors import OperationFailure

from schema_compat.core.config import settings
from schema_compat.log.logging import logger

REGISTRY_COLLECTION = "_migration_registry"
PROGRESS_COLLECTION = "_migration_progress"
SNAPSHOT_COLLECTION = "_migration_snapshots"


class DatabaseManager:
    """
    Manages MongoDB connections with connection pooling and index management.

    The manager is a singleton; clients are created lazily per environment so
    the index verifier can reach every deployment from one process.
    """

    _instance: Optional["DatabaseManager"] = None
    _clients: dict[str, AsyncIOMotorClient]

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._clients = {}
        return cls._instance

    def client(self, environment: str | None = None) -> AsyncIOMotorClient:
        """Get or create the MongoDB client for an environment."""
        environment = environment or settings.environment
        if environment not in self._clients:
            uri = settings.verify_environments.get(environment)
            if uri is None:
                raise KeyError(f"Unknown environment: {environment}")
            self._clients[environment] = AsyncIOMotorClient(
                uri,
                # Connection pool settings
                maxPoolSize=settings.mongo_max_pool_size,
                minPoolSize=settings.mongo_min_pool_size,
                maxIdleTimeMS=settings.mongo_max_idle_time_ms,
                # Timeouts
                connectTimeoutMS=settings.mongo_connect_timeout_ms,
                serverSelectionTimeoutMS=settings.mongo_server_selection_timeout_ms,
                socketTimeoutMS=settings.mongo_socket_timeout_ms,
                retryWrites=True,
                retryReads=True,
            )
        return self._clients[environment]

    def database(self, environment: str | None = None) -> AsyncIOMotorDatabase:
        """Get the configured database for an environment."""
        return self.client(environment)[settings.mongodb_database]

    @property
    def uri(self) -> str:
        return settings.mongodb

    async def create_indexes(
        self,
        required: Iterable[tuple[str, list[IndexModel]]],
        environment: str | None = None,
    ) -> list[str]:
        """
        Create entity indexes plus the migration bookkeeping indexes.

        Args:
            required: Pairs of (collection name, index models) declared by the entity codecs.
            environment: Environment to create the indexes in.

        Returns:
            Names of the indexes created or confirmed.
        """
        db = self.database(environment)
        created: list[str] = []

        for collection_name, indexes in required:
            try:
                names = await db[collection_name].create_indexes(indexes)
                created.extend(f"{collection_name}.{name}" for name in names)
                logger.info(
                    "Created indexes for {collection} collection",
                    collection=collection_name,
                    indexes=names,
                    event_type="indexes_created",
                )
            except OperationFailure as e:
                logger.error(
                    "Index creation failed for {collection}",
                    collection=collection_name,
                    error=str(e),
                    event_type="index_creation_failed",
                )
                raise

        await db[PROGRESS_COLLECTION].create_index([("status", ASCENDING)], name="idx_status")
        return created

    async def close(self) -> None:
        """Close every open client."""
        for client in self._clients.values():
            client.close()
        self._clients.clear()


db_manager = DatabaseManager()


def get_database(environment: str | None = None) -> AsyncIOMotorDatabase:
    """
    Get the configured MongoDB database.

    Returns:
        The MongoDB database instance.
    """
    return db_manager.database(environment)


async def check_mongodb_health(timeout: float = 5.0) -> bool:
    """
    Check MongoDB connectivity.

    Returns:
        True if the server answers a ping within the timeout.
    """
    try:
        await asyncio.wait_for(db_manager.client().admin.command("ping"), timeout=timeout)
        return True
    except Exception as e:
        logger.warning("MongoDB health check failed", error=str(e), event_type="mongodb_unhealthy")
        return False


async def close_database() -> None:
    """Close database connections on shutdown."""
    await db_manager.close()
    logger.info("Database connections closed", event_type="database_closed")
