"""
Database helpers

MongoDB connection and the small set of helpers the routes use.
`db` is None when DATABASE_URL / DATABASE_NAME are not configured; routes
that need the store go through get_collection(), which raises
ConfigurationMissing in that case.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.collection import Collection

from errors import ConfigurationMissing

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL / DATABASE_NAME not set, store is unavailable")


def get_collection(name: str) -> Collection:
    if db is None:
        raise ConfigurationMissing()
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(exclude_none=True)
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)
