"""Read access to the catalog plus the stock primitives the order flow needs.

All methods take the caller's session so lookups and stock mutations join
the caller's transaction.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update

from order_engine.errors import InsufficientStock, NotFound
from order_engine.models import Product, ProductVariant, Store

logger = logging.getLogger(__name__)


@dataclass
class OrderableItem:
    product_id: str
    variant_id: Optional[str]
    store_id: str
    name: str
    variant_name: Optional[str]
    price: Decimal
    tracks_inventory: bool
    available_qty: Optional[int]
    is_available: bool
    description: Optional[str] = None
    sku: Optional[str] = None
    images: List[str] = field(default_factory=list)
    specs: Optional[dict] = None


class CatalogAccessor:

    def get_store(self, session, store_id: str) -> Store:
        store = session.get(Store, store_id)
        if store is None:
            raise NotFound("Store not found")
        return store

    def get_orderable_item(self, session, product_id: str, variant_id: Optional[str] = None) -> OrderableItem:
        product = session.get(Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")

        price = product.price
        stock = product.stock_quantity
        variant_name = None
        is_available = bool(product.is_available)
        sku = product.sku

        if variant_id:
            variant = session.get(ProductVariant, variant_id)
            if variant is None or variant.product_id != product.id:
                raise NotFound(f"Variant {variant_id} not found")
            if variant.price is not None:
                price = variant.price
            stock = variant.stock_quantity
            variant_name = variant.name
            is_available = is_available and bool(variant.is_available)
            sku = variant.sku or sku

        return OrderableItem(
            product_id=product.id,
            variant_id=variant_id,
            store_id=product.store_id,
            name=product.name,
            variant_name=variant_name,
            price=Decimal(price),
            tracks_inventory=bool(product.track_inventory) and stock is not None,
            available_qty=stock,
            is_available=is_available,
            description=product.description,
            sku=sku,
            images=list(product.images or []),
            specs=product.specs,
        )

    def adjust_stock(self, session, product_id: str, variant_id: Optional[str], delta: int) -> None:
        """Atomically move stock by ``delta``; decrements never go below zero."""
        if variant_id:
            model, key = ProductVariant, variant_id
        else:
            model, key = Product, product_id

        stmt = (
            update(model)
            .where(model.id == key, model.stock_quantity.is_not(None))
            .values(stock_quantity=model.stock_quantity + delta)
        )
        if delta < 0:
            stmt = stmt.where(model.stock_quantity >= -delta)

        result = session.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            if delta < 0:
                raise InsufficientStock(f"Insufficient stock for product {product_id}", product_id=product_id)
            logger.warning("Stock restore matched no row for product=%s variant=%s", product_id, variant_id)

    def increment_order_count(self, session, product_id: str, quantity: int) -> None:
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(order_count=Product.order_count + quantity)
            .execution_options(synchronize_session=False)
        )

    def increment_store_order_count(self, session, store_id: str) -> None:
        session.execute(
            update(Store)
            .where(Store.id == store_id)
            .values(order_count=Store.order_count + 1)
            .execution_options(synchronize_session=False)
        )
