"""
MongoDB connection for the SideQuest API.

`db` is None when DATABASE_URL is not configured; the app reports that on /test
and refuses to serve quest routes until a database is available.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)


def oid() -> str:
    return str(ObjectId())


def now() -> datetime:
    return datetime.now(timezone.utc)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "sidequest")

QUEST_COLLECTION = "sidequest"
JOIN_REQUEST_COLLECTION = "joinrequest"
USER_COLLECTION = "user"


def connect(url: Optional[str] = DATABASE_URL, name: str = DATABASE_NAME) -> Optional[Database]:
    if not url:
        logger.warning("DATABASE_URL is not set; running without a database")
        return None
    client = MongoClient(url, tz_aware=True)
    return client[name]


db = connect()
