import time
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
import redis.asyncio as aioredis
from pymongo import IndexModel, ASCENDING
import structlog
from typing import Optional
from .config import settings, Collections

logger = structlog.get_logger()

class DatabaseManager:
    def __init__(self):
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.redis_client: Optional[aioredis.Redis] = None

    async def connect(self):
        """Initialize database connections"""
        try:
            self.mongo_client = AsyncIOMotorClient(
                settings.MONGODB_URI,
                maxPoolSize=20,
                minPoolSize=2,
                maxIdleTimeMS=30000,
                serverSelectionTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
                socketTimeoutMS=20000
            )
            self.database = self.mongo_client[settings.MONGO_DB_NAME]

            await self.mongo_client.admin.command('ping')
            logger.info("Connected to MongoDB", database=settings.MONGO_DB_NAME)

            await self._create_indexes()

            if settings.ENABLE_REDIS:
                self.redis_client = aioredis.from_url(
                    settings.REDIS_URL,
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=20,
                    socket_connect_timeout=5,
                    socket_timeout=5
                )
                await self.redis_client.ping()
                logger.info("Connected to Redis", url=settings.REDIS_URL)
            else:
                logger.warning("Redis is disabled - rule creation is not rate limited")

        except Exception as e:
            logger.error("Failed to connect to databases", error=str(e))
            raise

    async def disconnect(self):
        """Close database connections"""
        if self.mongo_client:
            self.mongo_client.close()
            self.mongo_client = None
            self.database = None
            logger.info("Disconnected from MongoDB")

        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None
            logger.info("Disconnected from Redis")

    async def _create_indexes(self):
        """Create the indexes the rule store and job scheduler query on"""
        rules_indexes = [
            IndexModel([("isActive", ASCENDING)]),
            IndexModel([("user", ASCENDING), ("isActive", ASCENDING)]),
        ]
        await self.database[Collections.RULES].create_indexes(rules_indexes)

        jobs_indexes = [
            IndexModel([("rule_id", ASCENDING)], unique=True),
            IndexModel([("name", ASCENDING), ("next_run_at", ASCENDING), ("locked_at", ASCENDING)]),
        ]
        await self.database[Collections.JOBS].create_indexes(jobs_indexes)

        logger.info("Database indexes created successfully")

    def get_collection(self, collection_name: str):
        """Get MongoDB collection"""
        if self.database is None:
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def health_check(self) -> dict:
        """Check database health status"""
        health = {
            "mongodb": {"status": "disconnected", "latency_ms": None},
            "redis": {"status": "disabled" if not settings.ENABLE_REDIS else "disconnected", "latency_ms": None}
        }

        try:
            if self.mongo_client:
                start_time = time.time()
                await self.mongo_client.admin.command('ping')
                latency = (time.time() - start_time) * 1000
                health["mongodb"] = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["mongodb"]["error"] = str(e)

        try:
            if self.redis_client:
                start_time = time.time()
                await self.redis_client.ping()
                latency = (time.time() - start_time) * 1000
                health["redis"] = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["redis"]["error"] = str(e)

        return health

# Global database manager instance
db_manager = DatabaseManager()

# Convenience functions
def get_redis() -> Optional[aioredis.Redis]:
    """Get Redis instance"""
    return db_manager.redis_client

def get_collection(collection_name: str):
    """Get MongoDB collection"""
    return db_manager.get_collection(collection_name)
