import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _get_db_name_from_uri(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.path and len(parsed.path) > 1:
        return parsed.path.lstrip("/")
    return os.getenv("MONGODB_DB", "usage_meter")


def get_db() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("Mongo DB not initialized. Call init_mongo() first.")
    return _db


async def init_mongo() -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """Initialize the Mongo connection and ensure indexes.

    Reads MONGODB_URI and optional pool tuning from environment. The client is
    timezone aware so stored timestamps come back as UTC datetimes.
    """
    global _client, _db

    uri = os.getenv("MONGODB_URI", "mongodb://localhost:27017/usage_meter")
    max_pool = int(os.getenv("MONGODB_MAX_POOL_SIZE", "100"))
    min_pool = int(os.getenv("MONGODB_MIN_POOL_SIZE", "0"))
    connect_timeout_ms = int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "10000"))
    socket_timeout_ms = int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "20000"))

    try:
        _client = AsyncIOMotorClient(
            uri,
            tz_aware=True,
            maxPoolSize=max_pool,
            minPoolSize=min_pool,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        db_name = _get_db_name_from_uri(uri)
        _db = _client[db_name]

        try:
            await _db.command("ping")
            logger.info("Connected to MongoDB database '%s'", db_name)
        except Exception as e:  # pragma: no cover
            logger.warning("MongoDB ping failed: %s", e)

        await ensure_indexes(_db)
        return _client, _db
    except Exception as e:
        logger.exception("Failed to initialize MongoDB: %s", e)
        raise


async def close_mongo() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    usage = db["usage_records"]
    pricing = db["model_pricing"]
    filters = db["safety_filters"]
    try:
        await usage.create_index([("created_at", -1)], name="created_at_desc_v1")
        await usage.create_index(
            [("user_id", 1), ("team_id", 1), ("created_at", -1)], name="identity_created_at_v1"
        )
        await usage.create_index(
            [("model_provider", 1), ("model_name", 1), ("created_at", -1)], name="provider_model_created_at_v1"
        )
        await pricing.create_index(
            [("provider", 1), ("model_name", 1), ("effective_date", -1)], name="provider_model_effective_v1"
        )
        await filters.create_index([("is_active", 1), ("created_at", 1)], name="active_created_at_v1")
        logger.info("MongoDB indexes ensured")
    except Exception as e:  # pragma: no cover - index creation failures should not crash
        logger.warning("Failed to ensure MongoDB indexes: %s", e)
