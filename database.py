"""
MongoDB connection and document helpers.

Each Pydantic model in schemas.py maps to a collection named after the
lowercase class name (Product -> "product"). Stores receive the database
handle as their first argument; the HTTP layer obtains it through ``get_db``.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config
from errors import InternalError, NotFound

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise InternalError("Database is not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["course"].create_index([("name", ASCENDING)], unique=True)
    database["order"].create_index([("client.user", ASCENDING)])


def utcnow() -> datetime:
    # naive UTC, the form pymongo hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def parse_id(value: Any, label: str) -> ObjectId:
    """Turn a path/body id into an ObjectId; malformed ids count as absent."""
    oid = to_object_id(value)
    if oid is None:
        raise NotFound(f"{label} with id {value} not found")
    return oid


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> ObjectId:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return inserted_id


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-ready copy of a stored document: ``_id`` becomes ``id``, ObjectIds become strings."""
    if not doc:
        return doc
    out = _plain(doc)
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
