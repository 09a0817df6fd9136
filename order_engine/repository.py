"""Persistence for orders and payments.

Each public mutating method is one database transaction. Cross-entity
invariants (order + stock, cancellation + stock restore, payment completion +
order advance) live entirely inside a single method here.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import joinedload, selectinload

from order_engine.catalog import CatalogAccessor
from order_engine.database import session_scope
from order_engine.enums import OrderStatus, PaymentStatus
from order_engine.errors import AlreadyProcessed, InvalidTransition, NotFound
from order_engine.models import Order, Payment, SettlementAccount, Store, utcnow
from order_engine.state_machine import PAYMENT_ADVANCES_FROM, TIMESTAMP_FIELDS

logger = logging.getLogger(__name__)

WEBHOOK = "webhook"
POLL = "poll"

COMPLETABLE_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)


def history_entry(status, note: str, when=None) -> dict:
    return {
        "status": OrderStatus(status).value,
        "timestamp": (when or utcnow()).isoformat(),
        "note": note,
    }


@dataclass
class ReconcileOutcome:
    payment: Payment
    order: Order
    previous_status: OrderStatus
    advanced: bool


class OrderRepository:

    def __init__(self, session_factory=session_scope, catalog: Optional[CatalogAccessor] = None):
        self._session_factory = session_factory
        self.catalog = catalog or CatalogAccessor()

    def session(self):
        """A plain read scope for callers that validate against the catalog."""
        return self._session_factory()

    # -- reads -------------------------------------------------------------

    def order_number_exists(self, order_number: str) -> bool:
        with self._session_factory() as session:
            return session.execute(
                select(Order.id).where(Order.order_number == order_number)
            ).first() is not None

    def payment_reference_exists(self, reference: str) -> bool:
        with self._session_factory() as session:
            return session.execute(
                select(Payment.id).where(Payment.reference == reference)
            ).first() is not None

    def get_order(self, order_id: str) -> Order:
        with self._session_factory() as session:
            order = session.execute(
                select(Order)
                .options(selectinload(Order.items), joinedload(Order.store))
                .where(Order.id == order_id)
            ).scalar_one_or_none()
            if order is None:
                raise NotFound("Order not found")
            return order

    def get_order_by_number(self, order_number: str) -> Optional[Order]:
        with self._session_factory() as session:
            return session.execute(
                select(Order).options(selectinload(Order.items)).where(Order.order_number == order_number)
            ).scalar_one_or_none()

    def orders_for_phone(self, phone: str, limit: int = 50) -> List[Order]:
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(Order)
                    .options(selectinload(Order.items))
                    .where(Order.customer_phone == phone)
                    .order_by(Order.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    def store_ids_for_merchant(self, merchant_id: str) -> List[str]:
        with self._session_factory() as session:
            return list(session.execute(select(Store.id).where(Store.merchant_id == merchant_id)).scalars())

    def list_orders(self, store_ids: List[str], filters: Dict[str, str], page: int, limit: int) -> Tuple[List[Order], int]:
        conditions = [Order.store_id.in_(store_ids)]
        for column in ("store_id", "status", "payment_status", "payment_method", "customer_phone"):
            value = filters.get(column)
            if value is not None:
                conditions.append(getattr(Order, column) == getattr(value, "value", value))

        with self._session_factory() as session:
            total = session.execute(select(func.count(Order.id)).where(*conditions)).scalar_one()
            orders = list(
                session.execute(
                    select(Order)
                    .options(selectinload(Order.items))
                    .where(*conditions)
                    .order_by(Order.created_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).scalars()
            )
            return orders, total

    def get_payment(self, reference: str) -> Optional[Payment]:
        with self._session_factory() as session:
            return session.execute(select(Payment).where(Payment.reference == reference)).scalar_one_or_none()

    def settlement_account_for_store(self, store_id: str) -> Optional[SettlementAccount]:
        with self._session_factory() as session:
            return session.execute(
                select(SettlementAccount)
                .join(Store, Store.merchant_id == SettlementAccount.merchant_id)
                .where(Store.id == store_id)
            ).scalar_one_or_none()

    # -- atomic operations ------------------------------------------------

    def create_order_with_stock_adjustment(self, order: Order) -> Order:
        """Insert the order with its items and take stock for every tracked line."""
        with self._session_factory() as session:
            session.add(order)
            for item in order.items:
                if item.tracks_inventory:
                    self.catalog.adjust_stock(session, item.product_id, item.variant_id, -item.quantity)
                self.catalog.increment_order_count(session, item.product_id, item.quantity)
            self.catalog.increment_store_order_count(session, order.store_id)
            session.flush()
            return order

    def apply_status_transition(self, order_id: str, expected: OrderStatus, target: OrderStatus,
                                note: str, merchant_notes: Optional[str] = None,
                                tracking_url: Optional[str] = None) -> Order:
        with self._session_factory() as session:
            order = self._lock_order(session, order_id)
            if order.status != expected.value:
                raise InvalidTransition(order.status, target)

            now = utcnow()
            values = {
                "status": target.value,
                "status_history": [*order.status_history, history_entry(target, note, now)],
                "updated_at": now,
            }
            stamp = TIMESTAMP_FIELDS.get(target)
            if stamp and getattr(order, stamp) is None:
                values[stamp] = now
            if merchant_notes is not None:
                values["merchant_notes"] = merchant_notes
            if tracking_url is not None:
                values["tracking_url"] = tracking_url

            self._compare_and_set(session, order_id, expected, target, values)
            session.refresh(order)
            return order

    def restore_stock_and_cancel(self, order_id: str, expected: OrderStatus, reason: Optional[str]) -> Order:
        with self._session_factory() as session:
            order = self._lock_order(session, order_id)
            if order.status != expected.value:
                raise InvalidTransition(order.status, OrderStatus.CANCELLED)

            now = utcnow()
            values = {
                "status": OrderStatus.CANCELLED.value,
                "status_history": [
                    *order.status_history,
                    history_entry(OrderStatus.CANCELLED, reason or "Order cancelled", now),
                ],
                "cancelled_at": now,
                "cancellation_reason": reason,
                "updated_at": now,
            }
            self._compare_and_set(session, order_id, expected, OrderStatus.CANCELLED, values)

            for item in order.items:
                if item.tracks_inventory:
                    self.catalog.adjust_stock(session, item.product_id, item.variant_id, item.quantity)

            session.refresh(order)
            return order

    def add_payment(self, payment: Payment) -> Payment:
        with self._session_factory() as session:
            session.add(payment)
            session.flush()
            return payment

    def reconcile_payment_if_pending(self, reference: str, payload: dict, source: str) -> ReconcileOutcome:
        """Complete a payment and mark its order paid, exactly once.

        The status check and the COMPLETED write are one conditional UPDATE;
        a caller that loses the race gets ``AlreadyProcessed`` and changes nothing.
        A FAILED payment can still complete: the processor confirmed the charge.
        """
        with self._session_factory() as session:
            now = utcnow()
            flags = {"webhook_received": True} if source == WEBHOOK else {"poll_verified": True}
            result = session.execute(
                update(Payment)
                .where(Payment.reference == reference, Payment.status.in_(COMPLETABLE_STATUSES))
                .values(
                    status=PaymentStatus.COMPLETED.value,
                    verified_at=now,
                    completed_at=now,
                    processor_payload=payload,
                    **flags,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_missing_or_processed(session, reference)

            payment = session.execute(select(Payment).where(Payment.reference == reference)).scalar_one()
            order = self._lock_order(session, payment.order_id)
            previous = OrderStatus(order.status)

            if order.payment_status == PaymentStatus.COMPLETED.value:
                logger.warning(
                    "Payment %s completed for order %s already paid by %s; refund the duplicate charge",
                    reference, order.order_number, order.payment_reference,
                )
                session.flush()
                return ReconcileOutcome(payment=payment, order=order, previous_status=previous, advanced=False)

            order.payment_status = PaymentStatus.COMPLETED.value
            order.payment_reference = reference
            order.paid_at = now
            advanced = previous in PAYMENT_ADVANCES_FROM
            if advanced:
                order.status = OrderStatus.PREPARING.value
                order.preparing_at = order.preparing_at or now
                order.status_history = [
                    *order.status_history,
                    history_entry(OrderStatus.PREPARING, "Payment confirmed", now),
                ]
            elif previous == OrderStatus.CANCELLED:
                logger.warning("Payment %s completed for cancelled order %s", reference, order.order_number)

            session.flush()
            return ReconcileOutcome(payment=payment, order=order, previous_status=previous, advanced=advanced)

    def mark_payment_failed_if_pending(self, reference: str, payload: dict, reason: str) -> Payment:
        with self._session_factory() as session:
            now = utcnow()
            result = session.execute(
                update(Payment)
                .where(Payment.reference == reference, Payment.status == PaymentStatus.PENDING.value)
                .values(
                    status=PaymentStatus.FAILED.value,
                    failed_at=now,
                    failure_reason=reason,
                    processor_payload=payload,
                    poll_verified=True,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_missing_or_processed(session, reference)
            return session.execute(select(Payment).where(Payment.reference == reference)).scalar_one()

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _lock_order(session, order_id: str) -> Order:
        order = session.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise NotFound("Order not found")
        return order

    @staticmethod
    def _compare_and_set(session, order_id: str, expected: OrderStatus, target: OrderStatus, values: dict) -> None:
        result = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition(expected, target)

    @staticmethod
    def _raise_missing_or_processed(session, reference: str) -> None:
        payment = session.execute(select(Payment).where(Payment.reference == reference)).scalar_one_or_none()
        if payment is None:
            raise NotFound(f"Payment {reference} not found")
        raise AlreadyProcessed(f"Payment {reference} is already {payment.status}")
