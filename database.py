"""
Database Helper Functions

MongoDB operations for the application. Each Pydantic model in schemas.py
corresponds to one collection, named after the lowercase class name.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

import config
from errors import Internal, InvalidArgument

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def utcnow() -> datetime:
    # pymongo returns naive UTC datetimes, so everything is stored that way
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """FastAPI dependency handing out the configured database."""
    if db is None:
        raise Internal("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with timestamps and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value, what: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise InvalidArgument(f"Invalid {what}")
    return ObjectId(str(value))


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    out = {}
    _id = doc.pop("_id", None)
    if _id is not None:
        out["id"] = str(_id)
    for k, v in doc.items():
        out[k] = _serialize_value(v)
    return out


def ensure_indexes(database) -> None:
    try:
        database["user"].create_index("email", unique=True)
        database["cart"].create_index("user_id", unique=True)
        database["order"].create_index("order_code", unique=True, sparse=True)
        database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        database["order"].create_index("status")
        database["product"].create_index("category")
        for name in ("otp_code", "pending_registration"):
            database[name].create_index("identifier", unique=True)
            database[name].create_index("expires_at", expireAfterSeconds=0)
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes: %s", exc)
