from __future__ import annotations
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Documents are stored camelCase; Python code uses snake_case via aliases.
# Gateway-shaped payloads (payment/refund details) keep the gateway's snake_case keys.

SUMMARY_TOLERANCE = 0.01


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Fulfilment states past which a customer can no longer cancel
FULFILLED_STATUSES = {OrderStatus.SHIPPED, OrderStatus.DELIVERED}


# Orders

class OrderItem(CamelModel):
    id: str
    name: str
    image: Optional[str] = None
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    subtotal: float = 0


class OrderSummary(CamelModel):
    subtotal: float = Field(ge=0)
    shipping: float = Field(ge=0, default=0)
    taxes: float = Field(ge=0, default=0)
    discount: float = Field(ge=0, default=0)
    discount_code: Optional[str] = None
    total: float = Field(ge=0)

    def expected_total(self) -> float:
        return round(self.subtotal + self.shipping + self.taxes - self.discount, 2)

    def is_balanced(self) -> bool:
        return abs(self.total - self.expected_total()) <= SUMMARY_TOLERANCE


class ShippingAddress(CamelModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str


class PaymentDetails(BaseModel):
    razorpay_payment_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    amount: float = 0
    currency: str = "INR"
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class RefundDetails(BaseModel):
    refund_id: str
    amount: float
    status: str
    created_at: Optional[datetime] = None
    speed_processed: Optional[str] = None
    error: Optional[str] = None
    note: Optional[str] = None


class DeliveryTimeline(CamelModel):
    """Customer-facing wording for each fulfilment stage."""

    processing_days: Optional[str] = None
    shipped_days: Optional[str] = None
    delivered_days: Optional[str] = None


class Order(CamelModel):
    order_id: str
    user_id: Optional[str] = None
    user_email: str
    items: list[OrderItem]
    shipping_address: ShippingAddress
    payment_details: PaymentDetails
    order_summary: OrderSummary
    status: OrderStatus
    estimated_delivery: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_details: Optional[RefundDetails] = None
    admin_notes: Optional[str] = None
    timeline: Optional[DeliveryTimeline] = None
    version: int = 1

    def to_document(self) -> dict[str, Any]:
        doc = self.model_dump(by_alias=True, exclude_none=True)
        doc["status"] = self.status.value
        return doc


class CreateOrderRequest(CamelModel):
    items: list[OrderItem] = Field(min_length=1)
    shipping_address: ShippingAddress
    payment_details: PaymentDetails
    order_summary: OrderSummary
    discount_code: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class AdminOrderUpdate(CamelModel):
    status: Optional[OrderStatus] = None
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    timeline: Optional[DeliveryTimeline] = None
    # Version the caller last read; omitted means last write wins
    version: Optional[int] = None


class AdminEmailRequest(BaseModel):
    email: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _strip(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Email required")
        return v


class AdminListResponse(BaseModel):
    admins: list[str]


class SuccessResponse(BaseModel):
    success: bool = True


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=-(-total // limit) if limit else 0,
            has_next=page * limit < total,
            has_prev=page > 1,
        )


class OrderStats(CamelModel):
    total: int = 0
    pending: int = 0
    confirmed: int = 0
    processing: int = 0
    shipped: int = 0
    delivered: int = 0
    cancelled: int = 0
    total_revenue: float = 0


class OrderListResponse(CamelModel):
    success: bool = True
    orders: list[Order]
    pagination: Pagination


class AdminOrderListResponse(OrderListResponse):
    stats: OrderStats


class OrderResponse(CamelModel):
    success: bool = True
    order: Order


class CreateOrderResponse(OrderResponse):
    order_id: str


class UpdateOrderResponse(OrderResponse):
    message: str = "Order updated successfully"


class StatsResponse(CamelModel):
    success: bool = True
    stats: OrderStats


class CancelOrderResponse(CamelModel):
    success: bool = True
    message: str
    refund_details: RefundDetails


# Gateway checkout

class CreatePaymentOrderRequest(BaseModel):
    amount: float = Field(gt=0, description="Amount in major currency units")
    currency: Optional[str] = None
    receipt: Optional[str] = None
    notes: dict[str, str] = {}


class CreatePaymentOrderResponse(BaseModel):
    success: bool = True
    order_id: str
    amount: int
    currency: str
    key_id: str


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    message: str = "Payment verified successfully"
    payment_id: str
    order_id: str


# Catalogue

class ColorOption(BaseModel):
    name: str
    value: str


def normalize_colors(raw: Any) -> list[dict[str, str]]:
    """Resolve every stored colour shape into ``[{name, value}]``.

    Accepts a plain or comma separated string, a JSON-encoded list, a list of
    names, or a list of ``{name, value}`` objects.
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                return normalize_colors(json.loads(text))
            except json.JSONDecodeError:
                pass
        return [{"name": part.strip(), "value": part.strip()} for part in text.split(",") if part.strip()]
    if isinstance(raw, dict):
        raw = [raw]
    colors = []
    for entry in raw:
        if isinstance(entry, dict):
            name = entry.get("name") or entry.get("value")
            if name:
                colors.append({"name": name, "value": entry.get("value") or name})
        elif isinstance(entry, str) and entry.strip():
            colors.append({"name": entry.strip(), "value": entry.strip()})
    return colors


def normalize_badges(raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                return normalize_badges(json.loads(text))
            except json.JSONDecodeError:
                pass
        return [text]
    badges = []
    for entry in raw:
        if isinstance(entry, dict):
            entry = entry.get("name") or entry.get("label")
        if isinstance(entry, str) and entry.strip():
            badges.append(entry.strip())
    return badges


class Product(CamelModel):
    id: str
    name: str
    price: float = Field(ge=0)
    original_price: Optional[float] = None
    discount_percentage: Optional[float] = None
    image: Optional[str] = None
    images: list[str] = []
    category: Optional[str] = None
    description: Optional[str] = None
    sizes: list[str] = []
    colors: list[ColorOption] = []
    badges: list[str] = []
    specifications: dict[str, Any] = {}
    stock: int = 0
    rating: Optional[float] = None

    @field_validator("colors", mode="before")
    @classmethod
    def _colors(cls, v):
        return normalize_colors(v)

    @field_validator("badges", mode="before")
    @classmethod
    def _badges(cls, v):
        return normalize_badges(v)


class ProductListResponse(BaseModel):
    products: list[Product]
