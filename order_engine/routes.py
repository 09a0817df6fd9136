from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from order_engine.audit import DatabaseAuditSink
from order_engine.auth import MerchantDirectory, optional_actor, verify_token
from order_engine.config import get_settings
from order_engine.database import session_scope
from order_engine.enums import OrderStatus, PaymentMethod, PaymentStatus
from order_engine.notifications import build_dispatcher
from order_engine.orders import OrderService
from order_engine.payments import PaymentService
from order_engine.processor import PaystackClient
from order_engine.repository import OrderRepository
from order_engine.schemas import (
    CancelOrderRequest,
    CreateOrderRequest,
    InitializePaymentRequest,
    InitializePaymentResponse,
    OrderDetailOut,
    OrderOut,
    OrderPage,
    UpdateStatusRequest,
    VerifyPaymentResponse,
)

router = APIRouter()


@lru_cache(maxsize=1)
def get_notifier():
    return build_dispatcher(get_settings())


def get_order_service() -> OrderService:
    settings = get_settings()
    return OrderService(
        OrderRepository(session_scope),
        MerchantDirectory(session_scope),
        get_notifier(),
        DatabaseAuditSink(session_scope),
        max_number_attempts=settings.max_identifier_attempts,
    )


def get_payment_service() -> PaymentService:
    settings = get_settings()
    return PaymentService(
        OrderRepository(session_scope),
        PaystackClient.from_settings(settings),
        get_notifier(),
        DatabaseAuditSink(session_scope),
        currency=settings.currency,
        max_reference_attempts=settings.max_identifier_attempts,
    )


@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(
    request: CreateOrderRequest,
    actor_id: Optional[str] = Depends(optional_actor),
    service: OrderService = Depends(get_order_service),
):
    return service.create_order(
        request.store_id,
        request.items,
        request.customer,
        request.delivery,
        request.payment_method,
        customer_notes=request.customer_notes,
        actor_id=actor_id,
    )


@router.get("/orders", response_model=OrderPage)
def list_orders(
    store_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    payment_method: Optional[PaymentMethod] = None,
    customer_phone: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor_id: str = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    filters = {
        "store_id": store_id,
        "status": status,
        "payment_status": payment_status,
        "payment_method": payment_method,
        "customer_phone": customer_phone,
    }
    return service.list_orders(actor_id, filters, page=page, limit=limit)


@router.get("/orders/track/{order_number}", response_model=OrderOut)
def track_order(
    order_number: str,
    phone: str = Query(...),
    service: OrderService = Depends(get_order_service),
):
    return service.track_order(order_number, phone)


@router.get("/orders/customer/{phone}", response_model=List[OrderOut])
def customer_orders(phone: str, service: OrderService = Depends(get_order_service)):
    return service.get_customer_orders(phone)


@router.get("/orders/{order_id}", response_model=OrderDetailOut)
def get_order(
    order_id: str,
    actor_id: Optional[str] = Depends(optional_actor),
    service: OrderService = Depends(get_order_service),
):
    order, is_merchant = service.get_order(order_id, actor_id)
    return OrderDetailOut.model_validate(order).model_copy(update={"is_merchant": is_merchant})


@router.patch("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: str,
    request: UpdateStatusRequest,
    actor_id: str = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    return service.update_status(
        actor_id, order_id, request.status, notes=request.merchant_notes, tracking_url=request.tracking_url
    )


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: str,
    request: Optional[CancelOrderRequest] = None,
    actor_id: Optional[str] = Depends(optional_actor),
    service: OrderService = Depends(get_order_service),
):
    reason = request.reason if request else None
    return service.cancel_order(order_id, reason=reason, actor_id=actor_id)


@router.post("/payments/initialize", response_model=InitializePaymentResponse)
def initialize_payment(
    request: InitializePaymentRequest,
    actor_id: str = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    return service.initialize_payment(
        request.order_id, request.email, request.phone, callback_url=request.callback_url, actor_id=actor_id
    )


@router.get("/payments/verify/{reference}", response_model=VerifyPaymentResponse)
def verify_payment(reference: str, service: PaymentService = Depends(get_payment_service)):
    return service.verify_payment(reference)
