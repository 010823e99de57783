from __future__ import annotations
import logging
import math
import random
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config import Settings
from errors import (
    AlreadyCancelledError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    InvalidOrderError,
    NotCancellableError,
    OrderNotFoundError,
    PaymentNotConfirmedError,
    RefundFailedError,
    TooCloseToDeliveryError,
)
from payments import RazorpayClient, round_money, to_major, to_minor
from schemas import (
    FULFILLED_STATUSES,
    SUMMARY_TOLERANCE,
    CreateOrderRequest,
    Order,
    OrderStatus,
    Pagination,
    RefundDetails,
)
from store import OrderFilter, OrderStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by customer"
NO_PAYMENT_REFUND_ID = "no_payment_to_refund"
MANUAL_REFUND_ID = "manual_refund_required"
MANUAL_REFUND_STATUS = "manual_processing_required"
MANUAL_REFUND_MESSAGE = "Order cancelled successfully. Refund will be processed manually within 2-3 business days."
SECONDS_PER_DAY = 24 * 60 * 60


def new_order_id(now: datetime) -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"ORD-{int(now.timestamp() * 1000)}-{suffix}"


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days until ``moment``, rounded up."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return math.ceil((moment - now).total_seconds() / SECONDS_PER_DAY)


def no_refund_required(now: datetime) -> RefundDetails:
    return RefundDetails(
        refund_id=NO_PAYMENT_REFUND_ID,
        amount=0,
        status="no_refund_required",
        created_at=now,
        note="No valid payment found to refund",
    )


def manual_refund_marker(amount: float, now: datetime, error: Optional[str] = None) -> RefundDetails:
    return RefundDetails(
        refund_id=MANUAL_REFUND_ID,
        amount=amount,
        status=MANUAL_REFUND_STATUS,
        created_at=now,
        error=error or "Automatic refund failed - manual processing required",
    )


@dataclass
class CancellationResult:
    order: Order
    refund_details: RefundDetails
    message: str = "Order cancelled successfully"


class OrderLifecycleManager:
    """Creates orders and runs the customer cancellation workflow.

    Eligibility is always judged from the freshly loaded order, and the final
    write is conditional on the version that was read.
    """

    def __init__(self, store: OrderStore, gateway: RazorpayClient, settings: Settings,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    async def create_order(self, user_email: str, request: CreateOrderRequest) -> Order:
        payment = request.payment_details
        if payment.status != "success":
            raise PaymentNotConfirmedError(details=f"Payment status is '{payment.status}'")
        if self.settings.VERIFY_PAYMENT_SIGNATURE:
            if not payment.razorpay_signature:
                raise PaymentNotConfirmedError(details="Payment signature is required")
            if not self.gateway.verify_signature(payment.razorpay_order_id or "", payment.razorpay_payment_id or "",
                                                 payment.razorpay_signature):
                raise PaymentNotConfirmedError(details="Invalid payment signature")

        summary = request.order_summary
        if not summary.is_balanced():
            raise InvalidOrderError(
                details=f"Order total {summary.total} does not match {summary.expected_total()}"
            )
        items = [item.model_copy(update={"subtotal": round_money(item.price * item.quantity)}) for item in request.items]
        items_total = round_money(sum(item.subtotal for item in items))
        if abs(items_total - summary.subtotal) > SUMMARY_TOLERANCE:
            raise InvalidOrderError(details=f"Order subtotal {summary.subtotal} does not match items {items_total}")

        now = self.clock()
        delivery_days = random.randint(self.settings.DELIVERY_DAYS_MIN, self.settings.DELIVERY_DAYS_MAX)
        order = Order(
            order_id=new_order_id(now),
            user_id=user_email,
            user_email=user_email,
            items=items,
            shipping_address=request.shipping_address,
            payment_details=payment.model_copy(update={"created_at": now}),
            order_summary=summary.model_copy(update={"discount_code": request.discount_code or summary.discount_code}),
            status=OrderStatus(self.settings.INITIAL_ORDER_STATUS),
            estimated_delivery=now + timedelta(days=delivery_days),
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(order.to_document())
        logger.info("Created order %s for %s (total %.2f)", order.order_id, user_email, summary.total)
        return order

    async def cancel_order(self, order_id: str, user_email: str, reason: Optional[str] = None) -> CancellationResult:
        doc = await self.store.find_one(order_id, user_email=user_email)
        if doc is None:
            raise OrderNotFoundError(order_id)
        order = Order.model_validate(doc)

        if order.status == OrderStatus.CANCELLED:
            raise AlreadyCancelledError()
        if order.status in FULFILLED_STATUSES:
            raise NotCancellableError()

        now = self.clock()
        min_days = self.settings.CANCELLATION_MIN_DAYS
        if order.estimated_delivery is not None:
            days_left = days_until(order.estimated_delivery, now)
            if days_left < min_days:
                raise TooCloseToDeliveryError(min_days, days_left)

        reason = reason or DEFAULT_CANCEL_REASON
        refund_details, message = await self._refund(order, reason, now)

        patch = {
            "status": OrderStatus.CANCELLED.value,
            "cancelledAt": now,
            "cancellationReason": reason,
            "refundDetails": refund_details.model_dump(exclude_none=True),
            "updatedAt": now,
        }
        try:
            updated = await self.store.update(order_id, patch, user_email=user_email, expected_version=order.version)
        except ConflictError:
            if refund_details.refund_id == NO_PAYMENT_REFUND_ID:
                raise
            # The gateway has already been asked to refund, so the cancellation must be recorded.
            return await self._record_after_conflict(order_id, user_email, patch, refund_details, message)
        except Exception:
            logger.error("Order %s refund %s recorded at gateway but order write failed",
                         order_id, refund_details.refund_id)
            raise
        if not updated:
            raise OrderNotFoundError(order_id)

        logger.info("Cancelled order %s (refund %s, %s)", order_id, refund_details.refund_id, refund_details.status)
        cancelled = order.model_copy(update={
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "refund_details": refund_details,
            "updated_at": now,
            "version": order.version + 1,
        })
        return CancellationResult(order=cancelled, refund_details=refund_details, message=message)

    async def _record_after_conflict(self, order_id: str, user_email: str, patch: dict, refund_details: RefundDetails,
                                     message: str) -> CancellationResult:
        """Persist a cancellation whose refund went out while the order was being edited.

        A concurrent cancellation that already stored a gateway refund wins; any
        other edit is overwritten with the cancellation.
        """
        logger.warning("Order %s changed during refund %s, re-reading before recording the cancellation",
                       order_id, refund_details.refund_id)
        doc = await self.store.find_one(order_id, user_email=user_email)
        if doc is None:
            logger.error("Order %s disappeared after refund %s was issued", order_id, refund_details.refund_id)
            raise OrderNotFoundError(order_id)
        current = Order.model_validate(doc)

        stored_refund = current.refund_details
        if current.status == OrderStatus.CANCELLED and stored_refund is not None \
                and stored_refund.refund_id not in (MANUAL_REFUND_ID, NO_PAYMENT_REFUND_ID):
            logger.error("Order %s already cancelled with refund %s; refund %s needs reconciliation",
                         order_id, stored_refund.refund_id, refund_details.refund_id)
            return CancellationResult(order=current, refund_details=stored_refund)

        if not await self.store.update(order_id, patch, user_email=user_email):
            raise OrderNotFoundError(order_id)
        logger.info("Cancelled order %s after concurrent edit (refund %s, %s)",
                    order_id, refund_details.refund_id, refund_details.status)
        cancelled = current.model_copy(update={
            "status": OrderStatus.CANCELLED,
            "cancelled_at": patch["cancelledAt"],
            "cancellation_reason": patch["cancellationReason"],
            "refund_details": refund_details,
            "updated_at": patch["updatedAt"],
            "version": current.version + 1,
        })
        return CancellationResult(order=cancelled, refund_details=refund_details, message=message)

    async def _refund(self, order: Order, reason: str, now: datetime) -> tuple[RefundDetails, str]:
        payment = order.payment_details
        total = order.order_summary.total
        if not payment.razorpay_payment_id or payment.status != "success":
            logger.info("Order %s has no captured payment, skipping refund", order.order_id)
            return no_refund_required(now), "Order cancelled successfully"

        payment_id = payment.razorpay_payment_id
        amount = to_minor(total)
        logger.info("Processing refund for order %s, payment %s, amount %s", order.order_id, payment_id, amount)
        try:
            record = await self.gateway.fetch_payment(payment_id)
        except GatewayError as exc:
            raise self._refund_failed(order, exc, f"Payment not found or invalid: {exc.description}") from exc

        if record.status != "captured":
            raise RefundFailedError(
                details=f"Payment status is '{record.status}', only captured payments can be refunded"
            )
        if not record.captured:
            raise RefundFailedError(details="Payment is not captured, cannot process refund")
        if record.amount != amount:
            logger.warning("Payment amount mismatch for order %s: expected %s, got %s",
                           order.order_id, amount, record.amount)

        notes = {"reason": reason, "order_id": order.order_id, "cancelled_at": now.isoformat()}
        receipt = f"refund_{order.order_id}_{int(now.timestamp() * 1000)}"
        try:
            refund = await self.gateway.refund(payment_id, amount, notes, receipt)
        except GatewayError as exc:
            if exc.is_bad_request:
                logger.error("Refund rejected for order %s, falling back to manual refund: %s",
                             order.order_id, exc.description)
                return manual_refund_marker(total, now, exc.description), MANUAL_REFUND_MESSAGE
            raise self._refund_failed(order, exc, exc.description) from exc

        details = RefundDetails(
            refund_id=refund.id,
            amount=to_major(refund.amount) if refund.amount else total,
            status=refund.status,
            created_at=datetime.fromtimestamp(refund.created_at, timezone.utc) if refund.created_at else now,
            speed_processed=refund.speed_processed,
        )
        return details, "Order cancelled successfully"

    def _refund_failed(self, order: Order, exc: GatewayError, details: str) -> RefundFailedError:
        retriable = isinstance(exc, GatewayTimeoutError)
        logger.error("Refund failed for order %s (retriable=%s): %s", order.order_id, retriable, details)
        return RefundFailedError(details=details, retriable=retriable)


class CustomerOrderQueries:
    """Reads scoped to the calling customer; every query filters on ``userEmail``."""

    def __init__(self, store: OrderStore):
        self.store = store

    async def list_my_orders(self, user_email: str, page: int = 1, limit: int = 10) -> tuple[list[Order], Pagination]:
        filt = OrderFilter(user_email=user_email)
        docs = await self.store.find(filt, skip=(page - 1) * limit, limit=limit, sort_by="createdAt", descending=True)
        total = await self.store.count(filt)
        return [Order.model_validate(d) for d in docs], Pagination.build(page, limit, total)

    async def get_my_order(self, order_id: str, user_email: str) -> Order:
        doc = await self.store.find_one(order_id, user_email=user_email)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate(doc)
