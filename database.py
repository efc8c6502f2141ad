"""
MongoDB access helpers.

`db` is None until DATABASE_URL and DATABASE_NAME are both set. Collection
names follow the schema class names lowercased (Product -> "product").
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL

_client = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back from the server."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["cartitem"].create_index(
        [("cart_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["order"].create_index([("items.product_id", ASCENDING)])
    database["pinverification"].create_index([("email", ASCENDING), ("expires_at", ASCENDING)])


def create_document(
    database: Database,
    collection_name: str,
    data: Union[BaseModel, Dict[str, Any]],
    now: Optional[datetime] = None,
) -> ObjectId:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    stamp = now or utcnow()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return result.inserted_id


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Turn `_id` into `id` and every ObjectId value into a string, recursively."""
    if doc is None:
        return None
    d = {}
    for k, v in doc.items():
        if k == "_id":
            d["id"] = str(v)
        else:
            d[k] = _serialize_value(v)
    return d


def _serialize_value(v):
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, dict):
        return serialize_doc(v)
    if isinstance(v, list):
        return [_serialize_value(x) for x in v]
    return v
