from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional
from motor.motor_asyncio import AsyncIOMotorCollection

from config import Settings
from errors import OrderNotFoundError, SuperAdminRemovalError, Unauthorized
from orders import manual_refund_marker, no_refund_required
from schemas import AdminOrderUpdate, Order, OrderStats, OrderStatus, Pagination
from store import OrderFilter, OrderStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMELINE = {
    "processingDays": "1-2 business days",
    "shippedDays": "3-5 business days",
    "deliveredDays": "5-7 business days",
}


@dataclass(frozen=True)
class AdminIdentity:
    email: str


class AdminDirectory:
    """Admin allow-list: the super admin, configured emails, then the ``admins`` collection.

    Only the super admin (``ADMIN_MAILID``) may add or remove entries in the
    collection, and the super admin itself can never be removed.
    """

    def __init__(self, settings: Settings, collection: AsyncIOMotorCollection):
        self.settings = settings
        self.collection = collection

    def is_super_admin(self, email: Optional[str]) -> bool:
        return bool(email) and email == self.settings.ADMIN_MAILID

    async def is_admin(self, email: Optional[str]) -> bool:
        if not email:
            return False
        if self.is_super_admin(email) or email in self.settings.ADMIN_EMAILS:
            return True
        return await self.collection.find_one({"email": email}) is not None

    async def require_admin(self, email: Optional[str]) -> AdminIdentity:
        if not await self.is_admin(email):
            logger.warning("Rejected admin access for %s", email or "anonymous")
            raise Unauthorized()
        return AdminIdentity(email=email)

    def require_super_admin(self, email: Optional[str]) -> AdminIdentity:
        if not self.is_super_admin(email):
            logger.warning("Rejected admin management by %s", email or "anonymous")
            raise Unauthorized()
        return AdminIdentity(email=email)

    async def list_admins(self) -> list[str]:
        return [doc["email"] async for doc in self.collection.find({}, {"_id": 0, "email": 1})]

    async def add_admin(self, email: str, by: AdminIdentity) -> None:
        await self.collection.update_one({"email": email}, {"$set": {"email": email}}, upsert=True)
        logger.info("Admin %s granted admin access to %s", by.email, email)

    async def remove_admin(self, email: str, by: AdminIdentity) -> None:
        if email == self.settings.ADMIN_MAILID:
            raise SuperAdminRemovalError()
        await self.collection.delete_one({"email": email})
        logger.info("Admin %s revoked admin access from %s", by.email, email)


class AdminOrderOperations:
    def __init__(self, store: OrderStore):
        self.store = store

    async def list_orders(self, status: Optional[str] = None, search: Optional[str] = None, page: int = 1,
                          limit: int = 10, sort_by: str = "createdAt",
                          sort_order: str = "desc") -> tuple[list[Order], Pagination, OrderStats]:
        filt = OrderFilter(status=status, search=search)
        docs = await self.store.find(filt, skip=(page - 1) * limit, limit=limit, sort_by=sort_by,
                                     descending=sort_order != "asc")
        total = await self.store.count(filt)
        # Stats always cover every order, independent of the filter and page.
        stats = await self.store.status_stats()
        return [Order.model_validate(d) for d in docs], Pagination.build(page, limit, total), stats

    async def stats(self) -> OrderStats:
        return await self.store.status_stats()

    async def get_order(self, order_id: str) -> Order:
        doc = await self.store.find_one(order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate(doc)

    async def update_order(self, order_id: str, update: AdminOrderUpdate, admin: AdminIdentity) -> Order:
        now = utcnow()
        patch: dict[str, Any] = {"updatedAt": now}
        if update.status is not None:
            patch["status"] = update.status.value
        if update.estimated_delivery is not None:
            patch["estimatedDelivery"] = update.estimated_delivery
        if "notes" in update.model_fields_set:
            patch["adminNotes"] = update.notes
        timeline = update.timeline
        if timeline and (timeline.processing_days or timeline.shipped_days or timeline.delivered_days):
            patch["timeline"] = {
                "processingDays": timeline.processing_days or DEFAULT_TIMELINE["processingDays"],
                "shippedDays": timeline.shipped_days or DEFAULT_TIMELINE["shippedDays"],
                "deliveredDays": timeline.delivered_days or DEFAULT_TIMELINE["deliveredDays"],
            }

        if update.status == OrderStatus.CANCELLED:
            current = await self.get_order(order_id)
            if current.refund_details is None:
                # Admin cancellations skip the gateway; leave a record for finance to settle.
                payment = current.payment_details
                if payment.razorpay_payment_id and payment.status == "success":
                    marker = manual_refund_marker(current.order_summary.total, now,
                                                  f"Cancelled by admin {admin.email}")
                else:
                    marker = no_refund_required(now)
                patch["refundDetails"] = marker.model_dump(exclude_none=True)
                patch["cancelledAt"] = now
                patch.setdefault("cancellationReason", "Cancelled by admin")

        if not await self.store.update(order_id, patch, expected_version=update.version):
            raise OrderNotFoundError(order_id)
        logger.info("Admin %s updated order %s: %s", admin.email, order_id, sorted(patch))
        return await self.get_order(order_id)
