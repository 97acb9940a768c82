"""
MongoDB connection and document helpers.

`db` is None when DATABASE_URL is not configured; routes obtain the handle
through get_db() so tests can swap in another database.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.decimal128 import Decimal128
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import ServiceUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL:
    _client = MongoClient(
        config.DATABASE_URL,
        serverSelectionTimeoutMS=config.MONGO_TIMEOUT_MS,
        connectTimeoutMS=config.MONGO_TIMEOUT_MS,
        socketTimeoutMS=config.MONGO_TIMEOUT_MS,
    )
    db = _client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise ServiceUnavailable("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("username_key", ASCENDING)], unique=True)
    database["product"].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    database["product"].create_index([("category", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Database indexes ensured", database=database.name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Union[str, ObjectId]) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def to_decimal128(value: Union[Decimal, int, str]) -> Decimal128:
    return Decimal128(Decimal(value))


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return Decimal(str(value))


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    newest_first: bool = True,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort([("created_at", DESCENDING), ("_id", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
