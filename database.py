"""
MongoDB access helpers.

The client is created lazily from configuration and handed to routes through
``get_db`` so that tests can substitute an in-memory database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from config import get_config
from errors import ConfigurationError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)

_clients: Dict[str, MongoClient] = {}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_db():
    config = get_config()
    if not config.database_url:
        raise ConfigurationError("DATABASE_URL is not configured")
    client = _clients.get(config.database_url)
    if client is None:
        client = MongoClient(config.database_url, serverSelectionTimeoutMS=5000)
        _clients[config.database_url] = client
        ensure_indexes(client[config.database_name])
    return client[config.database_name]


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise NotFoundError("not_found", "Record not found")


def create_document(db, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created/updated times and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = now_utc()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(db, collection_name: str, filter_dict: Optional[dict] = None, limit: int = 200) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {}).sort("created_at", -1).limit(limit)
    return list(cursor)


def update_versioned(db, collection_name: str, doc: dict, changes: dict, push: Optional[dict] = None) -> dict:
    """
    Apply ``changes`` only if the stored document still carries the version
    that ``doc`` was read at. Raises ConflictError on a stale write.
    """
    update: Dict[str, Any] = {
        "$set": {**changes, "updated_at": now_utc()},
        "$inc": {"version": 1},
    }
    if push:
        update["$push"] = push
    result = db[collection_name].update_one(
        {"_id": doc["_id"], "version": doc.get("version", 0)},
        update,
    )
    if result.matched_count == 0:
        raise ConflictError(f"stale_{collection_name}", f"The {collection_name} was modified concurrently, reload and retry")
    return db[collection_name].find_one({"_id": doc["_id"]})


def update_with_retry(db, collection_name: str, doc_id: Any, mutate: Callable[[dict], Optional[dict]], attempts: int = 3) -> dict:
    """
    Re-read the document, let ``mutate`` derive the changes from it and write
    them with a version check. A lost race re-reads and tries again.
    """
    for attempt in range(1, attempts + 1):
        doc = db[collection_name].find_one({"_id": oid(doc_id)})
        if doc is None:
            raise NotFoundError("not_found", f"{collection_name.capitalize()} not found")
        changes = mutate(doc)
        if not changes:
            return doc
        try:
            return update_versioned(db, collection_name, doc, changes)
        except ConflictError:
            if attempt == attempts:
                raise
            logger.info(f"Version conflict on {collection_name} {doc_id}, retrying ({attempt}/{attempts})")


def serialize(doc: Any) -> Any:
    """Make a stored document JSON friendly (ObjectIds to strings, _id to id)."""
    if isinstance(doc, list):
        return [serialize(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, (bytes, bytearray)):
        return None
    if not isinstance(doc, dict):
        return doc
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        else:
            out[key] = serialize(value)
    return out


def ensure_indexes(db):
    db["idempotencyrecord"].create_index("key", unique=True)
    db["idempotencyrecord"].create_index("created_at", expireAfterSeconds=60 * 60 * 24)
    db["build"].create_index([("user_id", 1), ("updated_at", -1)])
    db["order"].create_index([("user_id", 1), ("created_at", -1)])
    db["order"].create_index("build_id")
    db["paymentintentrecord"].create_index("provider_ref")
    db["paymentintentrecord"].create_index([("build_id", 1), ("milestone", 1)])
    db["build"].create_index("contract.submissions.submission_id")
    db["signeddocument"].create_index("submission_id", unique=True)
    logger.info("Database indexes ensured")
