from __future__ import annotations
import logging
from typing import Any, Optional
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase

from config import settings

logger = logging.getLogger(__name__)

ORDERS = "orders"
PRODUCTS = "products"
ADMINS = "admins"

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        logger.info("Connecting to MongoDB database %s", settings.DATABASE_NAME)
        _client = AsyncIOMotorClient(settings.DATABASE_URL, tz_aware=True)
        _db = _client[settings.DATABASE_NAME]
    return _db

async def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None

async def get_collection(name: str) -> AsyncIOMotorCollection:
    db = await get_db()
    return db[name]

def to_client(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Copy a raw document, exposing ``_id`` as a string ``id``."""
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d

async def get_documents(collection_name: str, filter_dict: dict[str, Any] | None = None, limit: int = 100, skip: int = 0) -> list[dict[str, Any]]:
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {}).sort("createdAt", -1).skip(skip).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(to_client(d))
    return docs

async def get_document(collection_name: str, doc_id: str) -> Optional[dict[str, Any]]:
    try:
        oid = ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None
    db = await get_db()
    return to_client(await db[collection_name].find_one({"_id": oid}))
