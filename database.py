"""
Database access

A single MongoClient is created on first use and shared by the process.
Handlers never import `db` directly: they receive the handle through the
`get_db` dependency so tests can swap in an in-memory database.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database

import config
from errors import NotFound

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect() -> Database:
    global _client, db
    if db is None:
        _client = MongoClient(config.DATABASE_URL)
        db = _client[config.DATABASE_NAME]
        logger.info("Connected to MongoDB database %s", config.DATABASE_NAME)
    return db


def close() -> None:
    global _client, db
    if _client is not None:
        _client.close()
    _client = None
    db = None


def get_db() -> Database:
    return connect()


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["store"].create_index("owner_id")
    database["cartitem"].create_index([("user_id", 1), ("product_id", 1)], unique=True)
    database["orderitem"].create_index("order_id")
    database["order"].create_index([("user_id", 1), ("created_at", -1)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, label: str) -> ObjectId:
    """Parse a path/body id, treating malformed ids as missing documents."""
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise NotFound(f"{label} not found")
    return ObjectId(value)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Replace Mongo's `_id` with a string `id` (copy, the input is left alone)."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit) if limit else 0}


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a document stamped with created_at/updated_at and return it."""
    doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List[tuple]] = None, skip: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
