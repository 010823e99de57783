"""Pytest fixtures for the storefront tests."""

import copy
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from admin import AdminDirectory
from config import Settings
from errors import ConflictError
from payments import RazorpayClient
from schemas import OrderStats
from store import STATUS_VALUES, OrderFilter

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
ADMIN_EMAIL = "admin@hex.store"
KEY_SECRET = "test_secret"


def _get(doc: dict, dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if isinstance(value, list):
            return [item.get(part) for item in value if isinstance(item, dict)]
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class InMemoryOrderStore:
    """Same interface as ``store.OrderStore``, backed by a list of dicts."""

    def __init__(self):
        self.docs: list[dict] = []
        self.updates: list[tuple[str, dict]] = []

    def _matches(self, doc: dict, filt: OrderFilter) -> bool:
        if filt.user_email is not None and doc.get("userEmail") != filt.user_email:
            return False
        if filt.status and filt.status != "all" and doc.get("status") != filt.status:
            return False
        if filt.search:
            pattern = re.compile(re.escape(filt.search), re.IGNORECASE)
            fields = ["orderId", "userEmail", "shippingAddress.firstName", "shippingAddress.lastName", "items.name"]
            values = []
            for field in fields:
                value = _get(doc, field)
                values.extend(value if isinstance(value, list) else [value])
            if not any(isinstance(v, str) and pattern.search(v) for v in values):
                return False
        return True

    async def find(self, filt, skip=0, limit=10, sort_by="createdAt", descending=True):
        docs = [d for d in self.docs if self._matches(d, filt)]
        docs.sort(key=lambda d: _get(d, sort_by), reverse=descending)
        return copy.deepcopy(docs[skip:skip + limit])

    async def count(self, filt):
        return sum(1 for d in self.docs if self._matches(d, filt))

    def _locate(self, order_id, user_email=None):
        for doc in self.docs:
            if doc["orderId"] == order_id and (user_email is None or doc["userEmail"] == user_email):
                return doc
        return None

    async def find_one(self, order_id, user_email=None):
        return copy.deepcopy(self._locate(order_id, user_email))

    async def insert(self, doc):
        self.docs.append(copy.deepcopy(doc))

    async def update(self, order_id, patch, user_email=None, expected_version=None):
        doc = self._locate(order_id, user_email)
        if doc is None:
            return False
        if expected_version is not None and doc.get("version", 1) != expected_version:
            raise ConflictError()
        doc.update(copy.deepcopy(patch))
        doc["updatedAt"] = patch.get("updatedAt") or datetime.now(timezone.utc)
        doc["version"] = doc.get("version", 1) + 1
        self.updates.append((order_id, copy.deepcopy(patch)))
        return True

    async def status_stats(self):
        stats = OrderStats()
        for doc in self.docs:
            if doc["status"] in STATUS_VALUES:
                setattr(stats, doc["status"], getattr(stats, doc["status"]) + 1)
            stats.total += 1
            stats.total_revenue += doc["orderSummary"]["total"]
        stats.total_revenue = round(stats.total_revenue, 2)
        return stats


class InMemoryAdminsCollection:
    """The slice of the motor collection API that ``AdminDirectory`` uses."""

    def __init__(self, emails=()):
        self.docs = [{"email": e} for e in emails]

    async def find_one(self, query):
        return next((dict(d) for d in self.docs if d["email"] == query["email"]), None)

    async def _iterate(self):
        for doc in list(self.docs):
            yield {"email": doc["email"]}

    def find(self, query, projection=None):
        return self._iterate()

    async def update_one(self, query, update, upsert=False):
        if not any(d["email"] == query["email"] for d in self.docs) and upsert:
            self.docs.append(dict(update["$set"]))

    async def delete_one(self, query):
        self.docs = [d for d in self.docs if d["email"] != query["email"]]


class FakeRazorpay:
    """Scriptable stand-in for the Razorpay REST API, served via httpx.MockTransport."""

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.refund_error: Optional[tuple[int, dict]] = None
        self.raise_on_refund: Optional[Exception] = None
        self.refund_status = "processed"
        # Called while a refund request is in flight
        self.on_refund: Optional[Callable[[], None]] = None

    def add_payment(self, payment_id: str, amount: int, status: str = "captured", captured: bool = True):
        self.payments[payment_id] = {
            "id": payment_id,
            "status": status,
            "amount": amount,
            "captured": captured,
            "method": "upi",
            "order_id": "order_ABC123",
            "currency": "INR",
            "created_at": 1767225600,
        }

    @property
    def refund_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/refund")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/v1/payments/"):
            payment = self.payments.get(path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(400, json={"error": {
                    "code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}})
            return httpx.Response(200, json=payment)
        if request.method == "POST" and path.endswith("/refund"):
            if self.on_refund is not None:
                self.on_refund()
            if self.raise_on_refund is not None:
                raise self.raise_on_refund
            if self.refund_error is not None:
                status, body = self.refund_error
                return httpx.Response(status, json=body)
            body = json.loads(request.content)
            payment_id = path.split("/")[-2]
            return httpx.Response(200, json={
                "id": "rfnd_FP8QHiV938haTz",
                "payment_id": payment_id,
                "amount": body["amount"],
                "status": self.refund_status,
                "created_at": 1767312000,
                "speed_processed": "normal",
            })
        if request.method == "POST" and path == "/v1/orders":
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "id": "order_IluGWxBm9U8zJ8",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            })
        return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "description": "Unknown route"}})


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RAZORPAY_API_BASE="https://api.razorpay.test/v1",
        ADMIN_MAILID=ADMIN_EMAIL,
        ADMIN_EMAILS=["ops@hex.store"],
    )


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def gateway(settings, razorpay):
    return RazorpayClient.from_settings(settings, transport=httpx.MockTransport(razorpay.handler))


@pytest.fixture
def make_order(store):
    """Insert an order document and return it."""
    counter = {"n": 0}

    def _make(user_email="alice@example.com", status="confirmed", total=1499.0,
              estimated_delivery=NOW + timedelta(days=5), payment_id="pay_29QQoUBi66xm2f",
              payment_status="success", created_at=None, **extra):
        counter["n"] += 1
        subtotal = total - 99.0 + 100.0
        doc = {
            "orderId": f"ORD-1767225600000-TEST{counter['n']:05d}",
            "userId": user_email,
            "userEmail": user_email,
            "items": [{
                "id": "prod-1",
                "name": "Linen Overshirt",
                "image": "https://img.example.com/overshirt.jpg",
                "price": subtotal,
                "quantity": 1,
                "selectedSize": "M",
                "selectedColor": "Sand",
                "subtotal": subtotal,
            }],
            "shippingAddress": {
                "firstName": "Alice", "lastName": "Rao", "phone": "9999999999",
                "address": "12 MG Road", "city": "Bengaluru", "state": "KA",
                "zipCode": "560001", "country": "India",
            },
            "paymentDetails": {
                "razorpay_order_id": "order_ABC123",
                "amount": total,
                "currency": "INR",
                "status": payment_status,
                "created_at": NOW - timedelta(days=1),
            },
            "orderSummary": {
                "subtotal": subtotal, "shipping": 99.0, "taxes": 0.0, "discount": 100.0, "total": total,
            },
            "status": status,
            "createdAt": created_at or NOW - timedelta(days=1) + timedelta(minutes=counter["n"]),
            "updatedAt": NOW - timedelta(days=1),
            "version": 1,
        }
        if payment_id:
            doc["paymentDetails"]["razorpay_payment_id"] = payment_id
        if estimated_delivery is not None:
            doc["estimatedDelivery"] = estimated_delivery
        doc.update(extra)
        store.docs.append(doc)
        return copy.deepcopy(doc)

    return _make


@pytest.fixture
def client(settings, store, gateway, admins):
    from config import get_settings
    from main import app, get_admin_directory, get_gateway, get_lifecycle, get_order_store
    from orders import OrderLifecycleManager

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_order_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_admin_directory] = lambda: AdminDirectory(settings, admins)
    app.dependency_overrides[get_lifecycle] = lambda: OrderLifecycleManager(store, gateway, settings, clock=lambda: NOW)
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def manager(store, gateway, settings):
    from orders import OrderLifecycleManager

    return OrderLifecycleManager(store, gateway, settings, clock=lambda: NOW)


@pytest.fixture
def admins():
    return InMemoryAdminsCollection(["staff@hex.store"])
