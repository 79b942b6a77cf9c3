# /app/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Any

from app.config.settings import settings
from app.utils.circuit_breaker import RedisCircuitBreaker
from app.utils.metrics import database_operations_counter
from app.services.cache_service import cache_service

logger = logging.getLogger(__name__)

SESSIONS_COLLECTION = "flow_sessions"
FLOWS_COLLECTION = "flows"
AGENTS_COLLECTION = "ai_agents"


class DatabaseService:
    """
    Owns the MongoDB client shared by the Mongo-backed session store and
    flow repository, with consistent error handling and index management.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                tz_aware=True,
            )
            self.db = self.client[settings.mongo_db_name]
            self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "database")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ---------------- Helpers ---------------- #

    async def _safe_db_operation(
        self,
        operation,
        use_circuit_breaker: bool = True,
        default_return: Any = None,
        name: str = "query",
    ) -> Any:
        """
        Run a Mongo call through the database circuit breaker.

        Failures are logged and counted under `name`; callers get
        `default_return` instead of an exception.
        """
        try:
            if use_circuit_breaker:
                result = await self.circuit_breaker.call(operation)
            else:
                result = await operation()
        except Exception as e:
            logger.exception(f"Database operation '{name}' failed: {type(e).__name__}")
            database_operations_counter.labels(operation=name, status="failed").inc()
            return default_return
        database_operations_counter.labels(operation=name, status="success").inc()
        return result

    # ---------------- Indexes ---------------- #

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            (SESSIONS_COLLECTION, [("channel_address", 1), ("flow_id", 1)], {"unique": True}),
            (SESSIONS_COLLECTION, [("channel_address", 1), ("status", 1), ("updated_at", -1)], {}),
            (SESSIONS_COLLECTION, [("status", 1), ("resume_at", 1)], {}),
            (FLOWS_COLLECTION, [("is_active", 1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        """Check MongoDB connection health."""
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
