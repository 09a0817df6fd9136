import logging
import math
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from order_engine.auth import MerchantDirectory
from order_engine.audit import AuditSink
from order_engine.delivery import DeliveryFeePolicy
from order_engine.effects import best_effort
from order_engine.enums import AuditAction, DeliveryOption, OrderStatus, PaymentMethod, PaymentStatus, StoreStatus
from order_engine.errors import (
    Forbidden,
    IdentifierExhausted,
    InsufficientStock,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from order_engine.models import Order, OrderItem
from order_engine.notifications import NotificationDispatcher, OrderPlaced, OrderStatusChanged
from order_engine.order_numbers import OrderNumberGenerator
from order_engine.repository import OrderRepository, history_entry
from order_engine.schemas import CartLine, CustomerInfo, DeliveryInfo, ProductSnapshot, specs_for_category
from order_engine.state_machine import NON_CANCELLABLE, validate_transition

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MAX_PAGE_SIZE = 100


class OrderService:
    """Order creation, status changes and cancellation."""

    def __init__(self, repository: OrderRepository, merchants: MerchantDirectory,
                 notifier: NotificationDispatcher, audit: AuditSink,
                 delivery_policy: Optional[DeliveryFeePolicy] = None, max_number_attempts: int = 10):
        self.repository = repository
        self.catalog = repository.catalog
        self.merchants = merchants
        self.notifier = notifier
        self.audit = audit
        self.delivery_policy = delivery_policy or DeliveryFeePolicy()
        self.max_number_attempts = max_number_attempts
        self.order_numbers = OrderNumberGenerator(repository.order_number_exists, max_attempts=max_number_attempts)

    def create_order(self, store_id: str, cart: List[CartLine], customer: CustomerInfo, delivery: DeliveryInfo,
                     payment_method: PaymentMethod, customer_notes: Optional[str] = None,
                     actor_id: Optional[str] = None) -> Order:
        if not cart:
            raise InvalidState("An order needs at least one item")

        with self.repository.session() as session:
            store = self.catalog.get_store(session, store_id)
            if store.status != StoreStatus.ACTIVE.value or not store.is_published:
                raise InvalidState("Store is not available for orders")
            merchant_phone = store.merchant.primary_phone if store.merchant else None

            if delivery.option == DeliveryOption.MERCHANT_DELIVERY and not (delivery.address and delivery.city):
                raise InvalidState("Delivery address and city are required for merchant delivery")

            for line in cart:
                product = self.catalog.get_orderable_item(session, line.product_id)
                if product.store_id != store.id:
                    raise NotFound(f"Product {line.product_id} not found")
                if not product.is_available:
                    raise InvalidState(f"Product {product.name} is not available")

            resolved = []
            requested = defaultdict(int)
            for line in cart:
                item = self.catalog.get_orderable_item(session, line.product_id, line.variant_id)
                if not item.is_available:
                    raise InvalidState(f"Variant {line.variant_id} not available")
                resolved.append((line, item))
                requested[(item.product_id, item.variant_id)] += line.quantity

            for line, item in resolved:
                wanted = requested[(item.product_id, item.variant_id)]
                if item.tracks_inventory and item.available_qty < wanted:
                    raise InsufficientStock(
                        f"Insufficient stock for {item.name}. Available: {item.available_qty}",
                        product_id=item.product_id,
                        available=item.available_qty,
                    )

            category = store.category

        items = []
        subtotal = Decimal("0")
        for line, item in resolved:
            line_total = (item.price * line.quantity).quantize(CENT)
            subtotal += line_total
            snapshot = ProductSnapshot(
                name=item.name,
                description=item.description,
                images=item.images,
                sku=item.sku,
                specs=specs_for_category(category, item.specs),
            )
            items.append(dict(
                product_id=item.product_id,
                variant_id=item.variant_id,
                product_name=item.name,
                variant_name=item.variant_name,
                price=item.price.quantize(CENT),
                quantity=line.quantity,
                subtotal=line_total,
                tracks_inventory=item.tracks_inventory,
                product_snapshot=snapshot.model_dump(mode="json"),
            ))

        delivery_fee = Decimal(self.delivery_policy.fee_for(delivery.option, delivery.city)).quantize(CENT)
        tax = Decimal("0.00")
        discount = Decimal("0.00")
        total = subtotal + delivery_fee + tax - discount

        fields = dict(
            store_id=store_id,
            customer_name=customer.name,
            customer_phone=customer.phone,
            customer_email=customer.email,
            status=OrderStatus.PLACED.value,
            status_history=[history_entry(OrderStatus.PLACED, "Order placed")],
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            tax=tax,
            discount=discount,
            total=total,
            delivery_option=delivery.option.value,
            delivery_address=delivery.address,
            delivery_city=delivery.city,
            delivery_area=delivery.area,
            delivery_notes=delivery.notes,
            payment_method=payment_method.value,
            payment_status=PaymentStatus.PENDING.value,
            customer_notes=customer_notes,
        )
        order = self._insert_with_unique_number(fields, items)

        logger.info("Order created: %s for store %s", order.order_number, store_id)
        best_effort(
            "Audit of order creation",
            self.audit.record,
            AuditAction.CREATE, "Order", order.id,
            actor_id=actor_id,
            metadata={
                "orderNumber": order.order_number,
                "storeId": store_id,
                "total": str(order.total),
                "customerPhone": customer.phone,
            },
        )
        best_effort(
            "Order placed notification",
            self.notifier.dispatch,
            OrderPlaced(
                order_id=order.id,
                order_number=order.order_number,
                total=order.total,
                customer_name=order.customer_name,
                customer_phone=order.customer_phone,
                merchant_phone=merchant_phone,
            ),
        )
        return order

    def update_status(self, actor_id: str, order_id: str, new_status: OrderStatus,
                      notes: Optional[str] = None, tracking_url: Optional[str] = None) -> Order:
        order = self.repository.get_order(order_id)
        self._require_owner(actor_id, order, "You do not own this order")

        current = OrderStatus(order.status)
        new_status = OrderStatus(new_status)
        validate_transition(current, new_status)

        if new_status == OrderStatus.CANCELLED:
            return self._cancel(order, current, notes, actor_id)

        note = notes or f"Status updated to {new_status.value}"
        updated = self.repository.apply_status_transition(
            order.id, current, new_status, note, merchant_notes=notes, tracking_url=tracking_url
        )
        logger.info("Order %s status updated to %s", order.order_number, new_status.value)
        self._after_transition(updated, current, note, actor_id)
        return updated

    def cancel_order(self, order_id: str, reason: Optional[str] = None, actor_id: Optional[str] = None) -> Order:
        order = self.repository.get_order(order_id)
        current = OrderStatus(order.status)
        if current in NON_CANCELLABLE:
            raise InvalidTransition(current, OrderStatus.CANCELLED)
        if current != OrderStatus.PLACED:
            self._require_owner(actor_id, order, "Only the merchant can cancel accepted orders")
        return self._cancel(order, current, reason, actor_id)

    def get_order(self, order_id: str, actor_id: Optional[str] = None) -> Tuple[Order, bool]:
        """Return the order and whether ``actor_id`` is the merchant that owns it."""
        order = self.repository.get_order(order_id)
        merchant_id = self.merchants.resolve_actor_merchant(actor_id)
        return order, merchant_id is not None and order.store.merchant_id == merchant_id

    def track_order(self, order_number: str, phone: str) -> Order:
        order = self.repository.get_order_by_number(order_number)
        if order is None:
            raise NotFound("Order not found")
        if order.customer_phone != phone:
            raise Forbidden("Invalid order number or phone number")
        return order

    def get_customer_orders(self, phone: str) -> List[Order]:
        return self.repository.orders_for_phone(phone)

    def list_orders(self, actor_id: str, filters: Optional[Dict[str, str]] = None, page: int = 1,
                    limit: int = 20) -> dict:
        merchant_id = self.merchants.resolve_actor_merchant(actor_id)
        if merchant_id is None:
            raise Forbidden("Only merchants can access this endpoint")

        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        store_ids = self.repository.store_ids_for_merchant(merchant_id)
        orders, total = self.repository.list_orders(store_ids, filters or {}, page, limit)
        return {
            "orders": orders,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def _insert_with_unique_number(self, fields: dict, items: List[dict]) -> Order:
        """Persist the order, drawing a fresh number when a concurrent insert took ours.

        Each attempt is its own transaction, so a lost race also rolls back its
        stock decrements before the next try.
        """
        for attempt in range(1, self.max_number_attempts + 1):
            order = Order(
                order_number=self.order_numbers.generate(),
                items=[OrderItem(**item) for item in items],
                **fields,
            )
            try:
                return self.repository.create_order_with_stock_adjustment(order)
            except IntegrityError as exc:
                if "order_number" not in str(exc.orig):
                    raise
                logger.warning("Order number %s taken at insert (attempt %d)", order.order_number, attempt)
        raise IdentifierExhausted(
            f"Could not allocate a unique order number after {self.max_number_attempts} attempts"
        )

    def _cancel(self, order: Order, current: OrderStatus, reason: Optional[str], actor_id: Optional[str]) -> Order:
        cancelled = self.repository.restore_stock_and_cancel(order.id, current, reason)
        logger.info("Order %s cancelled", order.order_number)
        self._after_transition(cancelled, current, reason or "Order cancelled", actor_id)
        return cancelled

    def _after_transition(self, order: Order, previous: OrderStatus, note: str, actor_id: Optional[str]) -> None:
        best_effort(
            "Audit of order status change",
            self.audit.record,
            AuditAction.UPDATE, "Order", order.id,
            actor_id=actor_id,
            old_value={"status": previous.value},
            new_value={"status": order.status},
            metadata={"orderNumber": order.order_number, "note": note},
        )
        best_effort(
            "Order status notification",
            self.notifier.dispatch,
            OrderStatusChanged(
                order_id=order.id,
                order_number=order.order_number,
                new_status=order.status,
                note=note,
                customer_phone=order.customer_phone,
            ),
        )

    def _require_owner(self, actor_id: Optional[str], order: Order, message: str) -> None:
        merchant_id = self.merchants.resolve_actor_merchant(actor_id)
        if merchant_id is None or order.store.merchant_id != merchant_id:
            raise Forbidden(message)
