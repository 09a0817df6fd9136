from order_engine.enums import OrderStatus
from order_engine.errors import InvalidTransition

TRANSITIONS = {
    OrderStatus.PLACED: {OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
    OrderStatus.ACCEPTED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY_FOR_PICKUP, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED},
    OrderStatus.READY_FOR_PICKUP: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED, OrderStatus.FAILED},
    OrderStatus.DELIVERED: {OrderStatus.COMPLETED, OrderStatus.DISPUTED},
    OrderStatus.COMPLETED: {OrderStatus.DISPUTED},
    OrderStatus.FAILED: {OrderStatus.PLACED},  # retry path
    OrderStatus.CANCELLED: set(),
    OrderStatus.DISPUTED: set(),
}

# Order column stamped when a status is reached.
TIMESTAMP_FIELDS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY_FOR_PICKUP: "ready_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

NON_CANCELLABLE = {OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}

# Statuses a confirmed payment moves forward to PREPARING.
PAYMENT_ADVANCES_FROM = {OrderStatus.PLACED, OrderStatus.ACCEPTED}


def can_transition(current, target) -> bool:
    return OrderStatus(target) in TRANSITIONS.get(OrderStatus(current), set())


def validate_transition(current, target) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
