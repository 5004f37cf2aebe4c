"""
MongoDB access for the reservation engine.

The module-level ``db`` is created from DATABASE_URL / DATABASE_NAME when both
are set; otherwise it stays None and callers must pass a database explicitly
(tests hand in a mongomock database).
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url and settings.database_name:
    _client = MongoClient(settings.database_url)
    db = _client[settings.database_name]


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _target(database: Optional[Database]) -> Database:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available. Set DATABASE_URL and DATABASE_NAME.")
    return target


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]],
                    database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = _target(database)[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Optional[Database] = None) -> None:
    target = _target(database)
    target["reservation"].create_index([("status", ASCENDING), ("approval_date", ASCENDING)])
    target["reservation"].create_index([("book_id", ASCENDING), ("status", ASCENDING), ("reservation_date", ASCENDING)])
    target["reservation"].create_index([("user_id", ASCENDING), ("reservation_date", DESCENDING)])
    target["penalty"].create_index([("reservation_id", ASCENDING), ("penalty_type", ASCENDING)])
    target["penalty"].create_index([("user_id", ASCENDING), ("is_paid", ASCENDING)])
    target["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
