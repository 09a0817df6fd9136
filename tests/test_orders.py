from decimal import Decimal

import pytest

from conftest import (
    CUSTOMER_PHONE,
    MERCHANT_USER,
    OTHER_MERCHANT_USER,
    stock_of,
    test_session_scope,
    variant_stock_of,
)
from order_engine.enums import DeliveryOption, OrderStatus, PaymentStatus
from order_engine.errors import (
    Forbidden,
    IdentifierExhausted,
    InsufficientStock,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from order_engine.models import Order, OrderItem, Product, Store
from order_engine.order_numbers import OrderNumberGenerator
from order_engine.schemas import CartLine, CustomerInfo, DeliveryInfo


def order_count():
    with test_session_scope() as db:
        return db.query(Order).count()


def advance(order_service, order, *statuses):
    for status in statuses:
        order = order_service.update_status(MERCHANT_USER, order.id, status)
    return order


def test_create_order_pickup_cash_on_delivery(place_order, catalog, notifier, audit):
    order = place_order()

    assert order.status == OrderStatus.PLACED.value
    assert order.payment_status == PaymentStatus.PENDING.value
    assert order.subtotal == Decimal("20.00")
    assert order.delivery_fee == Decimal("0")
    assert order.total == Decimal("20.00")
    assert order.total == order.subtotal + order.delivery_fee + order.tax - order.discount
    assert order.order_number.startswith("ORD-")
    assert stock_of(catalog.dress_id) == 3

    assert len(order.status_history) == 1
    assert order.status_history[0]["status"] == "PLACED"
    assert order.status_history[0]["note"] == "Order placed"

    assert notifier.events[0].order_number == order.order_number
    assert notifier.events[0].merchant_phone == "0200000001"
    assert audit.entries[0]["action"] == "CREATE"


def test_create_order_snapshots_product(place_order, catalog):
    order = place_order()
    item = order.items[0]

    assert item.product_name == "Kente Dress"
    assert item.price == Decimal("10.00")
    assert item.quantity == 2
    assert item.subtotal == Decimal("20.00")
    assert item.tracks_inventory is True
    assert item.product_snapshot["sku"] == "KD-1"
    assert item.product_snapshot["specs"] == {
        "kind": "FASHION", "sizes": ["S", "M"], "colors": ["gold"], "material": None,
    }

    # Later catalog edits never reach the placed order.
    with test_session_scope() as db:
        db.get(Product, catalog.dress_id).name = "Renamed Dress"
    with test_session_scope() as db:
        stored = db.query(OrderItem).filter_by(order_id=order.id).one()
        assert stored.product_name == "Kente Dress"
        assert stored.product_snapshot["name"] == "Kente Dress"


def test_create_order_increments_order_counters(place_order, catalog):
    place_order()
    with test_session_scope() as db:
        assert db.get(Product, catalog.dress_id).order_count == 2
        assert db.get(Store, catalog.store_id).order_count == 1


def test_cancel_placed_order_restores_stock(place_order, order_service, catalog):
    order = place_order()
    assert stock_of(catalog.dress_id) == 3

    cancelled = order_service.cancel_order(order.id, reason="Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED.value
    assert cancelled.cancellation_reason == "Changed my mind"
    assert cancelled.cancelled_at is not None
    assert cancelled.status_history[-1]["note"] == "Changed my mind"
    assert stock_of(catalog.dress_id) == 5


def test_insufficient_stock_aborts_without_touching_stock(place_order, catalog):
    with pytest.raises(InsufficientStock):
        place_order([CartLine(product_id=catalog.dress_id, quantity=6)])

    assert stock_of(catalog.dress_id) == 5
    assert order_count() == 0


def test_any_short_line_aborts_whole_order(place_order, catalog):
    lines = [
        CartLine(product_id=catalog.scarf_id, quantity=3),
        CartLine(product_id=catalog.dress_id, quantity=9),
    ]
    with pytest.raises(InsufficientStock):
        place_order(lines)

    assert stock_of(catalog.scarf_id) == 10
    assert stock_of(catalog.dress_id) == 5
    assert order_count() == 0


def test_repeated_product_lines_are_checked_together(place_order, catalog):
    lines = [
        CartLine(product_id=catalog.dress_id, quantity=3),
        CartLine(product_id=catalog.dress_id, quantity=3),
    ]
    with pytest.raises(InsufficientStock):
        place_order(lines)
    assert stock_of(catalog.dress_id) == 5


def test_guarded_decrement_rolls_back_order_insert(repository, place_order, catalog):
    order = place_order([CartLine(product_id=catalog.dress_id, quantity=1)])
    assert stock_of(catalog.dress_id) == 4

    # Stock changed under us between validation and commit.
    replay = Order(
        order_number="ORD-RACE0000001",
        store_id=catalog.store_id,
        customer_name="Ama Mensah",
        customer_phone=CUSTOMER_PHONE,
        status="PLACED",
        status_history=order.status_history,
        subtotal=Decimal("50.00"),
        total=Decimal("50.00"),
        delivery_option="PICKUP",
        payment_method="CASH_ON_DELIVERY",
        items=[OrderItem(product_id=catalog.dress_id, product_name="Kente Dress", price=Decimal("10.00"),
                         quantity=5, subtotal=Decimal("50.00"), tracks_inventory=True,
                         product_snapshot={"name": "Kente Dress"})],
    )
    with pytest.raises(InsufficientStock):
        repository.create_order_with_stock_adjustment(replay)

    assert stock_of(catalog.dress_id) == 4
    assert order_count() == 1


def test_variant_price_and_stock(place_order, catalog):
    order = place_order([CartLine(product_id=catalog.shirt_id, variant_id=catalog.large_variant_id, quantity=2)])

    assert order.items[0].variant_name == "XL"
    assert order.items[0].price == Decimal("28.00")
    assert order.total == Decimal("56.00")
    assert variant_stock_of(catalog.large_variant_id) == 2
    assert stock_of(catalog.shirt_id) == 0


def test_untracked_product_has_no_stock_limit(place_order, catalog):
    order = place_order([CartLine(product_id=catalog.bag_id, quantity=40)])
    assert order.total == Decimal("1200.00")
    assert order.items[0].tracks_inventory is False


def test_merchant_delivery_requires_address_and_city(place_order):
    with pytest.raises(InvalidState):
        place_order(delivery=DeliveryInfo(option=DeliveryOption.MERCHANT_DELIVERY, city="Accra"))


@pytest.mark.parametrize("city,fee", [("Tamale", "30.00"), ("Accra", "15.00"), ("Ho", "20.00")])
def test_merchant_delivery_fee(place_order, city, fee):
    order = place_order(delivery=DeliveryInfo(
        option=DeliveryOption.MERCHANT_DELIVERY, address="12 Oxford St", city=city,
    ))
    assert order.delivery_fee == Decimal(fee)
    assert order.total == Decimal("20.00") + Decimal(fee)


def test_unknown_store(place_order):
    with pytest.raises(NotFound):
        place_order(store_id="missing-store")


def test_unpublished_store(place_order, catalog):
    with pytest.raises(InvalidState):
        place_order(store_id=catalog.draft_store_id)


def test_store_is_checked_before_delivery(place_order, catalog):
    with pytest.raises(InvalidState, match="Store is not available"):
        place_order(store_id=catalog.draft_store_id,
                    delivery=DeliveryInfo(option=DeliveryOption.MERCHANT_DELIVERY))


def test_product_from_another_store(place_order, catalog):
    with pytest.raises(NotFound):
        place_order([CartLine(product_id=catalog.jollof_id, quantity=1)])


def test_unavailable_product(place_order, catalog):
    with pytest.raises(InvalidState):
        place_order([CartLine(product_id=catalog.retired_id, quantity=1)])


def test_unavailable_variant(place_order, catalog):
    with pytest.raises(InvalidState):
        place_order([CartLine(product_id=catalog.shirt_id, variant_id=catalog.sold_out_variant_id, quantity=1)])


def test_unknown_variant(place_order, catalog):
    with pytest.raises(NotFound):
        place_order([CartLine(product_id=catalog.shirt_id, variant_id="nope", quantity=1)])


def test_empty_cart_is_rejected(order_service, catalog):
    with pytest.raises(InvalidState):
        order_service.create_order(
            catalog.store_id, [], CustomerInfo(name="Ama", phone=CUSTOMER_PHONE),
            DeliveryInfo(option=DeliveryOption.PICKUP), "CARD",
        )


def test_notifier_failure_does_not_undo_order(place_order, order_service, catalog, mocker):
    mocker.patch.object(order_service.notifier, "dispatch", side_effect=RuntimeError("sms down"))
    mocker.patch.object(order_service.audit, "record", side_effect=RuntimeError("audit down"))

    order = place_order()

    assert order_count() == 1
    assert order.status == OrderStatus.PLACED.value
    assert stock_of(catalog.dress_id) == 3


def test_status_walk_stamps_timestamps(place_order, order_service):
    order = place_order()
    order = advance(order_service, order, OrderStatus.ACCEPTED, OrderStatus.PREPARING,
                    OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED)

    assert order.status == OrderStatus.COMPLETED.value
    assert [h["status"] for h in order.status_history] == [
        "PLACED", "ACCEPTED", "PREPARING", "READY_FOR_PICKUP", "COMPLETED",
    ]
    assert order.accepted_at and order.preparing_at and order.ready_at and order.completed_at
    assert order.delivered_at is None
    assert order.cancelled_at is None
    stamps = [h["timestamp"] for h in order.status_history]
    assert stamps == sorted(stamps)


def test_delivered_to_preparing_is_rejected(place_order, order_service):
    order = place_order()
    order = advance(order_service, order, OrderStatus.ACCEPTED, OrderStatus.PREPARING,
                    OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED)
    history_before = list(order.status_history)

    with pytest.raises(InvalidTransition):
        order_service.update_status(MERCHANT_USER, order.id, OrderStatus.PREPARING)

    with test_session_scope() as db:
        stored = db.get(Order, order.id)
        assert stored.status == OrderStatus.DELIVERED.value
        assert stored.status_history == history_before


def test_failed_delivery_can_be_retried(place_order, order_service):
    order = place_order()
    order = advance(order_service, order, OrderStatus.ACCEPTED, OrderStatus.PREPARING,
                    OrderStatus.OUT_FOR_DELIVERY, OrderStatus.FAILED)
    accepted_at = order.accepted_at

    order = advance(order_service, order, OrderStatus.PLACED, OrderStatus.ACCEPTED)

    assert order.status == OrderStatus.ACCEPTED.value
    assert order.accepted_at == accepted_at


def test_update_status_notes_and_tracking(place_order, order_service, notifier, audit):
    order = place_order()
    order = order_service.update_status(MERCHANT_USER, order.id, OrderStatus.ACCEPTED,
                                        notes="Packing now", tracking_url="https://track.example/1")

    assert order.merchant_notes == "Packing now"
    assert order.tracking_url == "https://track.example/1"
    assert order.status_history[-1]["note"] == "Packing now"
    assert notifier.events[-1].new_status == "ACCEPTED"
    assert audit.entries[-1]["old_value"] == {"status": "PLACED"}
    assert audit.entries[-1]["new_value"] == {"status": "ACCEPTED"}


def test_update_status_requires_owning_merchant(place_order, order_service):
    order = place_order()
    with pytest.raises(Forbidden):
        order_service.update_status(OTHER_MERCHANT_USER, order.id, OrderStatus.ACCEPTED)
    with pytest.raises(Forbidden):
        order_service.update_status("customer-user", order.id, OrderStatus.ACCEPTED)


def test_update_status_to_cancelled_restores_stock(place_order, order_service, catalog):
    order = place_order()
    order = order_service.update_status(MERCHANT_USER, order.id, OrderStatus.ACCEPTED)

    cancelled = order_service.update_status(MERCHANT_USER, order.id, OrderStatus.CANCELLED, notes="Out of fabric")

    assert cancelled.status == OrderStatus.CANCELLED.value
    assert cancelled.cancellation_reason == "Out of fabric"
    assert stock_of(catalog.dress_id) == 5


def test_only_merchant_cancels_after_acceptance(place_order, order_service, catalog):
    order = place_order()
    order_service.update_status(MERCHANT_USER, order.id, OrderStatus.ACCEPTED)

    with pytest.raises(Forbidden):
        order_service.cancel_order(order.id, reason="please")
    with pytest.raises(Forbidden):
        order_service.cancel_order(order.id, actor_id=OTHER_MERCHANT_USER)
    assert stock_of(catalog.dress_id) == 3

    cancelled = order_service.cancel_order(order.id, actor_id=MERCHANT_USER)
    assert cancelled.status == OrderStatus.CANCELLED.value
    assert stock_of(catalog.dress_id) == 5


@pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
def test_cannot_cancel_finished_order(place_order, order_service, catalog, terminal):
    order = place_order()
    if terminal == OrderStatus.COMPLETED:
        advance(order_service, order, OrderStatus.ACCEPTED, OrderStatus.PREPARING,
                OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED)
    else:
        order_service.cancel_order(order.id)

    with pytest.raises(InvalidTransition):
        order_service.cancel_order(order.id, actor_id=MERCHANT_USER)
    expected = 3 if terminal == OrderStatus.COMPLETED else 5
    assert stock_of(catalog.dress_id) == expected


def test_cancel_unknown_order(order_service):
    with pytest.raises(NotFound):
        order_service.cancel_order("missing")


def test_track_order(place_order, order_service):
    order = place_order()

    assert order_service.track_order(order.order_number, CUSTOMER_PHONE).id == order.id
    with pytest.raises(Forbidden):
        order_service.track_order(order.order_number, "0555000000")
    with pytest.raises(NotFound):
        order_service.track_order("ORD-00000000000", CUSTOMER_PHONE)


def test_customer_orders_and_merchant_listing(place_order, order_service, catalog):
    first = place_order()
    second = place_order([CartLine(product_id=catalog.scarf_id, quantity=1)])
    order_service.update_status(MERCHANT_USER, second.id, OrderStatus.ACCEPTED)

    assert {o.id for o in order_service.get_customer_orders(CUSTOMER_PHONE)} == {first.id, second.id}

    page = order_service.list_orders(MERCHANT_USER, {"status": OrderStatus.ACCEPTED})
    assert [o.id for o in page["orders"]] == [second.id]
    assert page["total"] == 1
    assert page["total_pages"] == 1

    assert order_service.list_orders(OTHER_MERCHANT_USER)["total"] == 0
    with pytest.raises(Forbidden):
        order_service.list_orders("customer-user")


def test_order_number_taken_at_insert_is_redrawn(place_order, order_service, catalog):
    first = place_order([CartLine(product_id=catalog.dress_id, quantity=1)])
    candidates = iter([first.order_number, "ORD-00000000042"])
    order_service.order_numbers = OrderNumberGenerator(lambda n: False, candidate=lambda: next(candidates))

    second = place_order([CartLine(product_id=catalog.dress_id, quantity=2)])

    assert second.order_number == "ORD-00000000042"
    assert order_count() == 2
    assert stock_of(catalog.dress_id) == 2


def test_order_number_insert_collisions_give_up(place_order, order_service, catalog):
    first = place_order([CartLine(product_id=catalog.dress_id, quantity=1)])
    order_service.order_numbers = OrderNumberGenerator(lambda n: False, candidate=lambda: first.order_number)

    with pytest.raises(IdentifierExhausted):
        place_order([CartLine(product_id=catalog.dress_id, quantity=2)])

    assert order_count() == 1
    assert stock_of(catalog.dress_id) == 4


def test_get_order_marks_owning_merchant(place_order, order_service):
    order = place_order()

    found, is_merchant = order_service.get_order(order.id, MERCHANT_USER)
    assert found.id == order.id
    assert is_merchant is True

    assert order_service.get_order(order.id)[1] is False
    assert order_service.get_order(order.id, OTHER_MERCHANT_USER)[1] is False
    with pytest.raises(NotFound):
        order_service.get_order("missing")
