"""
Database helpers

MongoDB connection configured by DATABASE_URL and DATABASE_NAME. `db` is None
when either is unset; routes answer 500 in that case.
"""

import os
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, database=None) -> list:
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, doc_id, updates: dict, database=None) -> int:
    database = database if database is not None else db
    updates = dict(updates)
    updates["updated_at"] = datetime.now(timezone.utc)
    result = database[collection_name].update_one({"_id": doc_id}, {"$set": updates})
    return result.modified_count
