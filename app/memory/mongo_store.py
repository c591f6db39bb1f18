"""
MongoDB Store for the Routing Pipeline
======================================

Persistent implementation of ``KeyedStore``: one collection per concern,
documents keyed by ``_id`` (the store key) and queried by ``user_id``.

Collections:
1. sessions           - chat sessions (user_id, status, expires_at)
2. messages           - append-only chat messages (session_id, created_at)
3. health_profiles    - one document per user, metric map + history
4. usage_ledger       - one document per (user, day)
5. diet_plans         - active and superseded plans
6. rag_contexts       - indexed per-user context snippets (TTL on expires_at)
7. routing_decisions  - audit trail of routed calls

INDEXES:
- every collection: (user_id) for query_by_user
- messages: (session_id, created_at ASC) for ordered history
- sessions: (user_id, status)
- rag_contexts: (expires_at) TTL - expired snippets removed by MongoDB
- routing_decisions: (created_at) TTL - 90 day audit retention
"""
from typing import Optional, List, Dict, Any
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from app.core.errors import PersistenceError
from app.memory.stores import KeyedStore, StoreBundle, STORE_NAMES

logger = logging.getLogger(__name__)

ROUTING_AUDIT_TTL_SECONDS = 90 * 24 * 3600


# =============================================================================
# DATABASE MANAGER
# =============================================================================

class DatabaseManager:
    """Singleton database connection manager"""

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[AsyncIOMotorClient] = None
    _db: Optional[AsyncIOMotorDatabase] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def connect(self, uri: str, database: str) -> None:
        """Initialize MongoDB connection with recommended settings"""
        if self._client is not None:
            return

        self._client = AsyncIOMotorClient(
            uri,
            # Connection Pool Settings
            minPoolSize=1,
            maxPoolSize=10,
            # Timeouts
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            serverSelectionTimeoutMS=5000,
            # Retry Settings
            retryWrites=True,
            retryReads=True,
        )
        self._db = self._client[database]

        # Verify connection
        try:
            await self._client.admin.command("ping")
            logger.info(f"Connected to MongoDB: {database}")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise

        await self._create_indexes()

    async def _create_indexes(self) -> None:
        """Create indexes for user lookups, ordered history and TTL cleanup"""
        indexes = {name: [IndexModel([("user_id", ASCENDING)])] for name in STORE_NAMES}

        indexes["messages"].append(
            IndexModel([("session_id", ASCENDING), ("created_at", ASCENDING)])
        )
        indexes["sessions"].append(
            IndexModel([("user_id", ASCENDING), ("status", ASCENDING)])
        )
        indexes["sessions"].append(
            IndexModel([("user_id", ASCENDING), ("last_activity_at", DESCENDING)])
        )
        indexes["diet_plans"].append(
            IndexModel([("user_id", ASCENDING), ("status", ASCENDING)])
        )
        # TTL: expired RAG snippets are removed by MongoDB
        indexes["rag_contexts"].append(
            IndexModel([("expires_at", ASCENDING)], expireAfterSeconds=0)
        )
        indexes["routing_decisions"].append(
            IndexModel([("created_at", ASCENDING)], expireAfterSeconds=ROUTING_AUDIT_TTL_SECONDS)
        )

        try:
            for name, models in indexes.items():
                await self._db[name].create_indexes(models)
            logger.info("MongoDB indexes created successfully")
        except OperationFailure as e:
            logger.warning(f"Index creation warning: {e}")

    async def disconnect(self) -> None:
        """Close database connection"""
        if self._client:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("Disconnected from MongoDB")

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    @property
    def db(self) -> AsyncIOMotorDatabase:
        """Get database instance"""
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    async def ping(self) -> bool:
        """Health check"""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError:
            return False


# Global instance
db_manager = DatabaseManager()


# =============================================================================
# KEYED STORE
# =============================================================================

class MongoKeyedStore(KeyedStore):
    """
    ``KeyedStore`` over one MongoDB collection.

    ``put`` is a full-document upsert (replace_one); callers serialize
    read-modify-write sequences per user with ``KeyedLock``.
    """

    def __init__(self, collection_name: str):
        self.name = collection_name

    @property
    def collection(self):
        return db_manager.db[self.name]

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            doc = await self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(f"{self.name}.get({key}) failed: {e}") from e
        return _strip_id(doc) if doc else None

    async def put(self, key: str, doc: Dict[str, Any]) -> None:
        try:
            await self.collection.replace_one(
                {"_id": key},
                {**doc, "_id": key},
                upsert=True
            )
        except PyMongoError as e:
            raise PersistenceError(f"{self.name}.put({key}) failed: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            result = await self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(f"{self.name}.delete({key}) failed: {e}") from e
        return result.deleted_count > 0

    async def query(self, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.find(where)
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError(f"{self.name}.query failed: {e}") from e
        return [_strip_id(doc) for doc in docs]


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


def create_mongo_stores() -> StoreBundle:
    """Stores backed by the connected ``db_manager`` database."""
    return StoreBundle(**{name: MongoKeyedStore(name) for name in STORE_NAMES})
