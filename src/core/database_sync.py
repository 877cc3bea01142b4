import logging

from pymongo import MongoClient
from src.core.config import settings

logger = logging.getLogger(__name__)


class MongoDBSync:
    def __init__(self):
        self.client = None
        self.db = None

    def connect(self):
        if self.db is not None:
            return  # already connected

        self.client = MongoClient(settings.MONGO_URI)
        self.db = self.client[settings.MONGO_DB]
        logger.info("Celery MongoDB connected: %s", self.db.name)

    @property
    def videos(self):
        if self.db is None:
            raise RuntimeError("MongoDB (sync) not initialized")
        return self.db[settings.VIDEOS_COLLECTION]

mongodb_sync = MongoDBSync()
