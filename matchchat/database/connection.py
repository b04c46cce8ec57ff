import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from matchchat.core.settings import settings


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> None:
    global _client, _db
    if _client is not None:
        return
    _client = AsyncIOMotorClient(settings.MONGO_URL, tz_aware=True)
    _db = _client[settings.MONGO_DB_NAME]
    await _client.admin.command("ping")
    logger.info(f"Connected to MongoDB database '{settings.MONGO_DB_NAME}'")


async def close_mongo_connection() -> None:
    global _client, _db
    if _client is None:
        return
    _client.close()
    _client = None
    _db = None
    logger.info("MongoDB connection closed")


def get_database() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("MongoDB is not connected")
    return _db


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
