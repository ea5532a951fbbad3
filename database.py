"""
Database helpers

MongoDB access for the marketplace. Every write that goes through these
helpers is published on the realtime change feed so subscribers see
INSERT / UPDATE / DELETE events for the affected rows.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient

from realtime import feed

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def now_utc():
    return datetime.now(timezone.utc)


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.astimezone(timezone.utc).isoformat()
    return d


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with timestamps and publish it. Returns the new id."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    data_dict.setdefault("created_at", now_utc())
    data_dict["updated_at"] = now_utc()
    result = db[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    feed.publish(collection_name, "INSERT", to_str_id(data_dict))
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: dict = None, limit: int = None,
                  sort: Optional[List] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_documents(collection_name: str, filter_dict: dict, changes: dict) -> int:
    """Apply `$set` changes to every matching document and publish UPDATE events."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    before = list(db[collection_name].find(filter_dict))
    if not before:
        return 0
    ids = [d["_id"] for d in before]
    db[collection_name].update_many({"_id": {"$in": ids}}, {"$set": {**changes, "updated_at": now_utc()}})
    after = {d["_id"]: d for d in db[collection_name].find({"_id": {"$in": ids}})}
    for old in before:
        new = after.get(old["_id"])
        if new is not None:
            feed.publish(collection_name, "UPDATE", to_str_id(new), to_str_id(old))
    return len(before)


def delete_documents(collection_name: str, filter_dict: dict) -> int:
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    doomed = list(db[collection_name].find(filter_dict))
    if not doomed:
        return 0
    db[collection_name].delete_many({"_id": {"$in": [d["_id"] for d in doomed]}})
    for old in doomed:
        feed.publish(collection_name, "DELETE", None, to_str_id(old))
    logger.debug("Deleted %d rows from %s", len(doomed), collection_name)
    return len(doomed)
