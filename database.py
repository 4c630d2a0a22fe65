"""
MongoDB access helpers.

The client is created lazily on first use so importing the application never
opens a connection. Route handlers receive the database through the `get_db`
dependency, which tests override with an in-memory stand-in.
"""

import logging
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import ValidationFailed

logger = logging.getLogger(__name__)


@lru_cache()
def get_client() -> MongoClient:
    logger.info("Connecting to MongoDB database %s", settings.database_name)
    return MongoClient(
        settings.database_url,
        serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
    )


def get_db() -> Database:
    return get_client()[settings.database_name]


def utcnow() -> datetime:
    # Mongo hands datetimes back naive (UTC), so everything stored is naive UTC too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def ensure_indexes(db: Database) -> None:
    db["book"].create_index([("isbn", ASCENDING)], unique=True)
    db["book"].create_index([("title", ASCENDING)])
    db["category"].create_index([("name", ASCENDING)], unique=True)
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("membership_number", ASCENDING)], unique=True)
    db["borrow"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING), ("status", ASCENDING)])
    db["borrow"].create_index([("status", ASCENDING), ("due_date", ASCENDING)])


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def to_object_id(id_str: str, label: str = "") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not id_str or not ObjectId.is_valid(id_str):
        raise ValidationFailed(f"Invalid {label + ' ' if label else ''}id")
    return ObjectId(id_str)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Turn a Mongo document into JSON-friendly data: `_id` becomes `id`, dates become ISO strings."""
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, (datetime, date)):
            d[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, dict):
            d[k] = serialize(v)
    return d


def paginate(page: int, limit: int) -> Dict[str, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), settings.max_page_size)
    return {"page": page, "limit": limit, "skip": (page - 1) * limit}


def total_pages(count: int, limit: int) -> int:
    return -(-count // limit) if limit else 0
