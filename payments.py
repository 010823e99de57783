"""
Razorpay client over the REST API using an async httpx client.

Only the calls the storefront needs: create a gateway order for checkout,
fetch a payment, refund a payment, and verify checkout signatures. Gateway
failures are translated into the ``GatewayError`` family; nothing here touches
local state, callers persist results themselves.

Amounts on the wire are integers in minor units (paise).
"""
from __future__ import annotations
import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
import httpx
from pydantic import BaseModel

from config import Settings
from errors import GatewayError, GatewayLookupError, GatewayRefundError, GatewayTimeoutError

logger = logging.getLogger(__name__)

PAYMENT_ID_PREFIX = "pay_"
CENT = Decimal("0.01")


def round_money(amount: float) -> float:
    """Round to two decimals, halves away from zero (``round()`` rounds them to even)."""
    return float(Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP))


def to_minor(amount: float) -> int:
    # Rounds the float product half up, the same as the checkout client does.
    return int(Decimal(amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_major(amount: int) -> float:
    return amount / 100


class PaymentRecord(BaseModel):
    id: str
    status: str
    amount: int
    captured: bool = False
    method: Optional[str] = None
    order_id: Optional[str] = None
    currency: Optional[str] = None
    created_at: Optional[int] = None


class RefundRecord(BaseModel):
    id: str
    amount: Optional[int] = None
    status: str
    created_at: Optional[int] = None
    speed_processed: Optional[str] = None
    payment_id: Optional[str] = None


class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, *, api_base: str = "https://api.razorpay.com/v1",
                 timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RazorpayClient":
        if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
            logger.warning("Razorpay credentials are not configured")
        return cls(
            settings.RAZORPAY_KEY_ID,
            settings.RAZORPAY_KEY_SECRET,
            api_base=settings.RAZORPAY_API_BASE,
            timeout=settings.GATEWAY_TIMEOUT,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, error_cls: type[GatewayError], **kwargs) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("Razorpay %s %s timed out", method, path)
            raise GatewayTimeoutError(f"Payment gateway timed out: {exc.__class__.__name__}") from exc
        except httpx.TransportError as exc:
            logger.error("Razorpay %s %s transport failure: %s", method, path, exc)
            raise GatewayTimeoutError(f"Payment gateway unreachable: {exc.__class__.__name__}") from exc

        if response.is_success:
            return response.json()

        code, description = None, response.reason_phrase or "Unknown error"
        try:
            err = response.json().get("error") or {}
            code = err.get("code")
            description = err.get("description") or description
        except ValueError:
            pass
        logger.error("Razorpay %s %s failed: %s %s %s", method, path, response.status_code, code, description)
        raise error_cls(description, status_code=response.status_code, code=code)

    async def fetch_payment(self, payment_id: str) -> PaymentRecord:
        if not payment_id or not payment_id.startswith(PAYMENT_ID_PREFIX):
            raise GatewayLookupError("Invalid payment ID format")
        data = await self._request("GET", f"/payments/{payment_id}", GatewayLookupError)
        return PaymentRecord.model_validate(data)

    async def refund(self, payment_id: str, amount: int, notes: dict[str, str], receipt: str,
                     speed: str = "normal") -> RefundRecord:
        payload = {"amount": amount, "speed": speed, "notes": notes, "receipt": receipt}
        data = await self._request("POST", f"/payments/{payment_id}/refund", GatewayRefundError, json=payload)
        return RefundRecord.model_validate(data)

    async def create_order(self, amount: int, currency: str, receipt: str,
                           notes: Optional[dict[str, str]] = None) -> GatewayOrder:
        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}}
        data = await self._request("POST", "/orders", GatewayError, json=payload)
        return GatewayOrder.model_validate(data)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            return False
        expected = hmac.new(
            self.key_secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature or "")
