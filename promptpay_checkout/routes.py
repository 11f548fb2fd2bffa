from datetime import datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from promptpay_checkout.auth import current_user_id
from promptpay_checkout.carts import CartService
from promptpay_checkout.checksum import promptpay_payload
from promptpay_checkout.codec import format_amount
from promptpay_checkout.config import get_settings
from promptpay_checkout.database import SessionLocal
from promptpay_checkout.errors import ConfigurationError
from promptpay_checkout.gateway import ScbClient
from promptpay_checkout.notifier import event_stream, notifier
from promptpay_checkout.orders import OrderService
from promptpay_checkout.payments import PaymentService

payment_router = APIRouter(prefix="/payment", tags=["payment"])
sandbox_router = APIRouter(prefix="/payment", tags=["payment"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])
cart_router = APIRouter(prefix="/cart", tags=["cart"])


class CartItemRequest(BaseModel):
    variant_id: int
    qty: int = 1


class CartQtyRequest(BaseModel):
    qty: int = Field(..., ge=1)


class SimulatePaidRequest(BaseModel):
    orderId: int


@lru_cache
def get_gateway() -> ScbClient:
    return ScbClient(get_settings())


def get_payment_service(gateway: ScbClient = Depends(get_gateway)) -> PaymentService:
    settings = get_settings()
    return PaymentService(
        gateway,
        SessionLocal,
        notifier,
        qr_expiry=timedelta(minutes=settings.qr_expiry_minutes),
    )


def get_order_service() -> OrderService:
    return OrderService(SessionLocal)


def get_cart_service() -> CartService:
    return CartService(SessionLocal)


# ---------- payment ----------

@payment_router.post("/checkout-qr", status_code=201)
def checkout_qr(
    user_id: int = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    return service.issue_qr(user_id).to_dict()


@payment_router.get("/status")
def payment_status(
    orderId: Optional[int] = None,
    transactionId: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    if orderId is None:
        raise HTTPException(status_code=400, detail="Missing orderId")
    return service.check_status(user_id, orderId, transactionId).to_dict()


@payment_router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    # signature covers the exact raw bytes, so the body is never parsed upstream
    payload = await request.body()
    await run_in_threadpool(service.confirm_by_webhook, payload, x_signature)
    return {"received": True}


@payment_router.get("/events/{order_id}")
async def payment_events(order_id: int, request: Request):
    return StreamingResponse(
        event_stream(request, order_id, notifier),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@payment_router.get("/me")
def payment_me(
    user_id: int = Depends(current_user_id),
    service: OrderService = Depends(get_order_service),
):
    return service.latest_order(user_id)


@sandbox_router.post("/simulate-paid")
def simulate_paid(
    request: SimulatePaidRequest,
    service: PaymentService = Depends(get_payment_service),
):
    service.simulate_paid(request.orderId)
    return {"ok": True}


# ---------- orders ----------

@orders_router.post("/checkout")
def checkout(
    user_id: int = Depends(current_user_id),
    service: OrderService = Depends(get_order_service),
):
    result = service.checkout(user_id)
    return {
        "message": "Checkout successful",
        "orderId": result.order.id,
        "grandTotal": format_amount(result.order.grand_total),
        "cleared": result.cleared,
    }


@orders_router.get("/me")
def my_orders(
    user_id: int = Depends(current_user_id),
    service: OrderService = Depends(get_order_service),
):
    return service.list_orders(user_id)


@orders_router.get("/{order_id}")
def order_detail(
    order_id: int,
    user_id: int = Depends(current_user_id),
    service: OrderService = Depends(get_order_service),
):
    return service.get_order(user_id, order_id)


@orders_router.get("/{order_id}/payment")
def order_payment(
    order_id: int,
    user_id: int = Depends(current_user_id),
    service: OrderService = Depends(get_order_service),
):
    settings = get_settings()
    if not settings.promptpay_id:
        raise ConfigurationError("PROMPTPAY_ID is not configured")
    order = service.get_order(user_id, order_id)
    order["promptpayQR"] = promptpay_payload(settings.promptpay_id, Decimal(order["grand_total"]))
    order["expiresAt"] = (
        datetime.now(timezone.utc) + timedelta(minutes=settings.qr_expiry_minutes)
    ).isoformat()
    return order


# ---------- cart ----------

@cart_router.get("/me")
def my_cart(
    user_id: int = Depends(current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return service.get_cart(user_id)


@cart_router.post("/items")
def add_cart_item(
    request: CartItemRequest,
    user_id: int = Depends(current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return service.add_item(user_id, request.variant_id, request.qty)


@cart_router.patch("/items/{item_id}")
def update_cart_item(
    item_id: int,
    request: CartQtyRequest,
    user_id: int = Depends(current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return service.update_item(user_id, item_id, request.qty)


@cart_router.delete("/items/{item_id}")
def remove_cart_item(
    item_id: int,
    user_id: int = Depends(current_user_id),
    service: CartService = Depends(get_cart_service),
):
    return service.remove_item(user_id, item_id)
