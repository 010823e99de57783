from __future__ import annotations
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admin import AdminDirectory, AdminIdentity, AdminOrderOperations
from config import Settings, get_settings, settings
from database import ADMINS, ORDERS, PRODUCTS, close_db, get_collection, get_db, get_document, get_documents
from errors import GatewayError, PaymentNotConfirmedError, ProductNotFoundError, ShopError, Unauthorized
from orders import CustomerOrderQueries, OrderLifecycleManager
from payments import RazorpayClient, to_minor
from schemas import (
    AdminEmailRequest,
    AdminListResponse,
    AdminOrderListResponse,
    AdminOrderUpdate,
    CancelOrderRequest,
    CancelOrderResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    CreatePaymentOrderRequest,
    CreatePaymentOrderResponse,
    OrderListResponse,
    OrderResponse,
    Product,
    ProductListResponse,
    StatsResponse,
    SuccessResponse,
    UpdateOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from store import OrderStore

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")

_gateway: Optional[RazorpayClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
    await close_db()


app = FastAPI(title="Hex Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error rendering

@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    body = {"error": exc.message}
    if exc.details:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Dependencies

async def get_order_store() -> OrderStore:
    return OrderStore(await get_collection(ORDERS))


def get_gateway(settings: Settings = Depends(get_settings)) -> RazorpayClient:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayClient.from_settings(settings)
    return _gateway


async def get_admin_directory(settings: Settings = Depends(get_settings)) -> AdminDirectory:
    return AdminDirectory(settings, await get_collection(ADMINS))


def current_user_email(request: Request, settings: Settings = Depends(get_settings)) -> str:
    email = (request.headers.get(settings.USER_EMAIL_HEADER) or "").strip()
    if not email:
        raise Unauthorized("Authentication required")
    return email


async def require_admin(request: Request, settings: Settings = Depends(get_settings),
                        directory: AdminDirectory = Depends(get_admin_directory)) -> AdminIdentity:
    return await directory.require_admin(request.headers.get(settings.USER_EMAIL_HEADER))


def require_super_admin(request: Request, settings: Settings = Depends(get_settings),
                        directory: AdminDirectory = Depends(get_admin_directory)) -> AdminIdentity:
    return directory.require_super_admin(request.headers.get(settings.USER_EMAIL_HEADER))


def get_lifecycle(store: OrderStore = Depends(get_order_store), gateway: RazorpayClient = Depends(get_gateway),
                  settings: Settings = Depends(get_settings)) -> OrderLifecycleManager:
    return OrderLifecycleManager(store, gateway, settings)


def get_customer_queries(store: OrderStore = Depends(get_order_store)) -> CustomerOrderQueries:
    return CustomerOrderQueries(store)


def get_admin_operations(store: OrderStore = Depends(get_order_store)) -> AdminOrderOperations:
    return AdminOrderOperations(store)


@app.get("/")
async def root():
    return {"message": "Hex Storefront Backend Running"}

@app.get("/test")
async def test():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "razorpay": "✅ Set" if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET else "❌ Not Set",
    }
    try:
        db = await get_db()
        response["database"] = "✅ Connected"
        response["collections"] = (await db.list_collection_names())[:10]
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# Checkout

@app.post("/razorpay/create-order", response_model=CreatePaymentOrderResponse)
async def create_payment_order(payload: CreatePaymentOrderRequest, gateway: RazorpayClient = Depends(get_gateway),
                               settings: Settings = Depends(get_settings)):
    try:
        order = await gateway.create_order(
            amount=to_minor(payload.amount),
            currency=payload.currency or settings.CURRENCY,
            receipt=payload.receipt or f"order_{int(time.time() * 1000)}",
            notes=payload.notes,
        )
    except GatewayError as exc:
        raise ShopError("Failed to create order", details=exc.description) from exc
    return CreatePaymentOrderResponse(order_id=order.id, amount=order.amount, currency=order.currency,
                                      key_id=settings.RAZORPAY_KEY_ID)

@app.post("/razorpay/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(payload: VerifyPaymentRequest, gateway: RazorpayClient = Depends(get_gateway)):
    if not gateway.verify_signature(payload.razorpay_order_id, payload.razorpay_payment_id,
                                    payload.razorpay_signature):
        raise PaymentNotConfirmedError("Invalid payment signature")
    return VerifyPaymentResponse(payment_id=payload.razorpay_payment_id, order_id=payload.razorpay_order_id)


# Customer orders

@app.post("/orders", response_model=CreateOrderResponse, response_model_exclude_none=True)
async def create_order(payload: CreateOrderRequest, email: str = Depends(current_user_email),
                       lifecycle: OrderLifecycleManager = Depends(get_lifecycle)):
    order = await lifecycle.create_order(email, payload)
    return CreateOrderResponse(order_id=order.order_id, order=order)

@app.get("/orders", response_model=OrderListResponse, response_model_exclude_none=True)
async def list_my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                         email: str = Depends(current_user_email),
                         queries: CustomerOrderQueries = Depends(get_customer_queries)):
    orders, pagination = await queries.list_my_orders(email, page, limit)
    return OrderListResponse(orders=orders, pagination=pagination)

@app.get("/orders/{order_id}", response_model=OrderResponse, response_model_exclude_none=True)
async def get_my_order(order_id: str, email: str = Depends(current_user_email),
                       queries: CustomerOrderQueries = Depends(get_customer_queries)):
    return OrderResponse(order=await queries.get_my_order(order_id, email))

@app.post("/orders/{order_id}/cancel", response_model=CancelOrderResponse, response_model_exclude_none=True)
async def cancel_order(order_id: str, payload: Optional[CancelOrderRequest] = Body(None),
                       email: str = Depends(current_user_email),
                       lifecycle: OrderLifecycleManager = Depends(get_lifecycle)):
    result = await lifecycle.cancel_order(order_id, email, payload.reason if payload else None)
    return CancelOrderResponse(message=result.message, refund_details=result.refund_details)


# Admin orders

@app.get("/admin/orders", response_model=AdminOrderListResponse, response_model_exclude_none=True)
async def admin_list_orders(admin: AdminIdentity = Depends(require_admin),
                            page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                            status: Optional[str] = Query(None), search: Optional[str] = Query(None),
                            sort_by: str = Query("createdAt", alias="sortBy"),
                            sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
                            ops: AdminOrderOperations = Depends(get_admin_operations)):
    orders, pagination, stats = await ops.list_orders(status, search, page, limit, sort_by, sort_order)
    return AdminOrderListResponse(orders=orders, pagination=pagination, stats=stats)

@app.get("/admin/orders/stats", response_model=StatsResponse)
async def admin_order_stats(admin: AdminIdentity = Depends(require_admin),
                            ops: AdminOrderOperations = Depends(get_admin_operations)):
    return StatsResponse(stats=await ops.stats())

@app.get("/admin/orders/{order_id}", response_model=OrderResponse, response_model_exclude_none=True)
async def admin_get_order(order_id: str, admin: AdminIdentity = Depends(require_admin),
                          ops: AdminOrderOperations = Depends(get_admin_operations)):
    return OrderResponse(order=await ops.get_order(order_id))

@app.put("/admin/orders/{order_id}", response_model=UpdateOrderResponse, response_model_exclude_none=True)
async def admin_update_order(order_id: str, payload: AdminOrderUpdate, admin: AdminIdentity = Depends(require_admin),
                             ops: AdminOrderOperations = Depends(get_admin_operations)):
    return UpdateOrderResponse(order=await ops.update_order(order_id, payload, admin))


# Admin accounts

@app.get("/admin/admins", response_model=AdminListResponse)
async def list_admins(admin: AdminIdentity = Depends(require_admin),
                      directory: AdminDirectory = Depends(get_admin_directory)):
    return AdminListResponse(admins=await directory.list_admins())

@app.post("/admin/admins", response_model=SuccessResponse)
async def add_admin(payload: AdminEmailRequest, admin: AdminIdentity = Depends(require_super_admin),
                    directory: AdminDirectory = Depends(get_admin_directory)):
    await directory.add_admin(payload.email, admin)
    return SuccessResponse()

@app.delete("/admin/admins", response_model=SuccessResponse)
async def remove_admin(payload: AdminEmailRequest, admin: AdminIdentity = Depends(require_super_admin),
                       directory: AdminDirectory = Depends(get_admin_directory)):
    await directory.remove_admin(payload.email, admin)
    return SuccessResponse()


# Catalogue (read only)

@app.get("/products", response_model=ProductListResponse)
async def list_products(q: Optional[str] = Query(None), category: Optional[str] = Query(None),
                        page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=200)):
    filter_dict = {}
    if q:
        filter_dict["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        filter_dict["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    docs = await get_documents(PRODUCTS, filter_dict, limit=limit, skip=(page - 1) * limit)
    return ProductListResponse(products=[Product.model_validate(d) for d in docs])

@app.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str):
    doc = await get_document(PRODUCTS, product_id)
    if not doc:
        raise ProductNotFoundError()
    return Product.model_validate(doc)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", settings.PORT)))
