import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from .config import settings

logger = logging.getLogger(__name__)


class MongoDB:
    client: AsyncIOMotorClient = None
    db = None

mongodb = MongoDB()

async def connect_to_mongo():
    mongodb.client = AsyncIOMotorClient(settings.MONGO_URI)
    mongodb.db = mongodb.client[settings.MONGO_DB]

    videos = mongodb.db[settings.VIDEOS_COLLECTION]
    await videos.create_index([("created_at", DESCENDING)])
    await videos.create_index([("is_packaged", ASCENDING)])
    await videos.create_index([("status", ASCENDING)])
    await videos.create_index([("tags", ASCENDING)])
    logger.info("Connected to MongoDB: %s", settings.MONGO_DB)

async def close_mongo_connection():
    if mongodb.client is not None:
        mongodb.client.close()
    mongodb.client = None
    mongodb.db = None
    logger.info("MongoDB connection closed")
