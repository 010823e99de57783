from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from motor.motor_asyncio import AsyncIOMotorCollection

from errors import ConflictError
from schemas import OrderStats, OrderStatus

logger = logging.getLogger(__name__)

STATUS_VALUES = {s.value for s in OrderStatus}
SORTABLE_FIELDS = {"createdAt", "updatedAt", "estimatedDelivery", "status", "orderSummary.total", "orderId"}


@dataclass
class OrderFilter:
    user_email: Optional[str] = None
    status: Optional[str] = None
    search: Optional[str] = None


def build_query(filt: OrderFilter) -> dict[str, Any]:
    query: dict[str, Any] = {}
    if filt.user_email is not None:
        query["userEmail"] = filt.user_email
    if filt.status and filt.status != "all":
        query["status"] = filt.status
    if filt.search:
        pattern = {"$regex": re.escape(filt.search), "$options": "i"}
        query["$or"] = [
            {"orderId": pattern},
            {"userEmail": pattern},
            {"shippingAddress.firstName": pattern},
            {"shippingAddress.lastName": pattern},
            {"items.name": pattern},
        ]
    return query


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStore:
    """MongoDB persistence for order documents.

    Orders are never deleted; the store has no delete operation.
    """

    def __init__(self, collection: AsyncIOMotorCollection):
        self.collection = collection

    async def find(self, filt: OrderFilter, skip: int = 0, limit: int = 10,
                   sort_by: str = "createdAt", descending: bool = True) -> list[dict[str, Any]]:
        if sort_by not in SORTABLE_FIELDS:
            sort_by = "createdAt"
        cursor = (
            self.collection.find(build_query(filt), {"_id": 0})
            .sort(sort_by, -1 if descending else 1)
            .skip(skip)
            .limit(limit)
        )
        return [doc async for doc in cursor]

    async def count(self, filt: OrderFilter) -> int:
        return await self.collection.count_documents(build_query(filt))

    async def find_one(self, order_id: str, user_email: Optional[str] = None) -> Optional[dict[str, Any]]:
        query: dict[str, Any] = {"orderId": order_id}
        if user_email is not None:
            query["userEmail"] = user_email
        return await self.collection.find_one(query, {"_id": 0})

    async def insert(self, doc: dict[str, Any]) -> None:
        await self.collection.insert_one(dict(doc))

    async def update(self, order_id: str, patch: dict[str, Any], user_email: Optional[str] = None,
                     expected_version: Optional[int] = None) -> bool:
        """Apply ``patch`` in one atomic document update.

        Returns False when the order does not exist. Raises ConflictError when
        ``expected_version`` no longer matches the stored version.
        """
        query: dict[str, Any] = {"orderId": order_id}
        if user_email is not None:
            query["userEmail"] = user_email
        update: dict[str, Any] = {"$set": {**patch, "updatedAt": patch.get("updatedAt") or utcnow()}}
        if expected_version is not None:
            # documents written before versioning count as version 1
            query["version"] = {"$in": [expected_version, None]} if expected_version == 1 else expected_version
            update["$set"]["version"] = expected_version + 1
        else:
            update["$inc"] = {"version": 1}
        result = await self.collection.update_one(query, update)
        if result.matched_count:
            return True
        if expected_version is not None and await self.find_one(order_id, user_email) is not None:
            logger.warning("Stale write rejected for order %s (expected version %s)", order_id, expected_version)
            raise ConflictError()
        return False

    async def status_stats(self) -> OrderStats:
        pipeline = [
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$orderSummary.total"}}},
        ]
        stats = OrderStats()
        async for row in self.collection.aggregate(pipeline):
            if row["_id"] in STATUS_VALUES:
                setattr(stats, row["_id"], row["count"])
            stats.total += row["count"]
            stats.total_revenue += row.get("revenue") or 0
        stats.total_revenue = round(stats.total_revenue, 2)
        return stats
