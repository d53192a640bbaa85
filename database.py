"""
MongoDB access helpers.

The client is created lazily by pymongo (no connection is opened until the
first operation), so importing this module never blocks.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import load_settings

_settings = load_settings()

# fail fast when the server is unreachable instead of pymongo's 30s default
client = MongoClient(_settings.database_url, serverSelectionTimeoutMS=3000, tz_aware=True)
db: Database = client[_settings.database_name]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    """Parse ``value`` as an ObjectId, returning None when it is not one."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def to_mongo(value: Any) -> Any:
    """Turn enums into their values so documents encode cleanly."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_mongo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_mongo(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        else:
            out[k] = v
    return out


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    database = db if database is None else database
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="python", exclude={"id"})
    else:
        data_dict = {k: v for k, v in data.items() if k != "id"}
    stamp = now_utc()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(to_mongo(data_dict))
    return str(result.inserted_id)
