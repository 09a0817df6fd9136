import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship

from order_engine.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Catalog side. Owned by the catalog service; the engine only reads these
# rows and adjusts stock / order counters.

class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), unique=True, index=True, nullable=False)
    business_name = Column(String(200))
    primary_phone = Column(String(20), nullable=False)
    business_email = Column(String(200))

    settlement_account = relationship("SettlementAccount", uselist=False, back_populates="merchant")
    stores = relationship("Store", back_populates="merchant")


class SettlementAccount(Base):
    __tablename__ = "settlement_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), unique=True, nullable=False)
    subaccount_code = Column(String(64))           # processor sub-account, e.g. ACCT_xxx
    is_active = Column(Boolean, nullable=False, default=False)

    merchant = relationship("Merchant", back_populates="settlement_account")


class Store(Base):
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True, default=_uuid)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    category = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, default="DRAFT")
    is_published = Column(Boolean, nullable=False, default=False)
    order_count = Column(Integer, nullable=False, default=0)

    merchant = relationship("Merchant", back_populates="stores")
    products = relationship("Product", back_populates="store")


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    sku = Column(String(64))
    images = Column(JSON, nullable=False, default=list)
    price = Column(Numeric(10, 2), nullable=False)
    track_inventory = Column(Boolean, nullable=False, default=False)
    stock_quantity = Column(Integer, nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)
    order_count = Column(Integer, nullable=False, default=0)
    specs = Column(JSON, nullable=True)

    store = relationship("Store", back_populates="products")
    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    sku = Column(String(64))
    price = Column(Numeric(10, 2), nullable=True)  # overrides product price when set
    stock_quantity = Column(Integer, nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)

    product = relationship("Product", back_populates="variants")


# Engine side.

class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(32), unique=True, index=True, nullable=False)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)

    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(20), nullable=False, index=True)
    customer_email = Column(String(200))

    status = Column(String(32), nullable=False, default="PLACED")
    status_history = Column(JSON, nullable=False, default=list)

    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)

    delivery_option = Column(String(32), nullable=False)
    delivery_address = Column(String(500))
    delivery_city = Column(String(100))
    delivery_area = Column(String(100))
    delivery_notes = Column(String(500))

    payment_method = Column(String(32), nullable=False)
    payment_status = Column(String(32), nullable=False, default="PENDING")
    payment_reference = Column(String(100))
    paid_at = Column(DateTime(timezone=True))

    customer_notes = Column(String(1000))
    merchant_notes = Column(String(500))
    tracking_url = Column(String(500))

    placed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    accepted_at = Column(DateTime(timezone=True))
    preparing_at = Column(DateTime(timezone=True))
    ready_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(String(500))

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    store = relationship("Store")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")
    payments = relationship("Payment", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    variant_id = Column(String(36), ForeignKey("product_variants.id"), nullable=True)

    product_name = Column(String(200), nullable=False)
    variant_name = Column(String(200))
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    tracks_inventory = Column(Boolean, nullable=False, default=False)
    product_snapshot = Column(JSON, nullable=False)  # frozen at order time

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="GHS")
    method = Column(String(32), nullable=False, default="CARD")
    status = Column(String(32), nullable=False, default="PENDING")  # PENDING | COMPLETED | FAILED

    reference = Column(String(100), unique=True, index=True, nullable=False)
    access_code = Column(String(100))
    authorization_url = Column(String(500))

    webhook_received = Column(Boolean, nullable=False, default=False)
    poll_verified = Column(Boolean, nullable=False, default=False)
    processor_payload = Column(JSON)                # last raw payload, kept for audit only
    details = Column("metadata", JSON)

    initiated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    verified_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    failure_reason = Column(String(500))

    order = relationship("Order", back_populates="payments")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    actor_id = Column(String(36), index=True)
    action = Column(String(32), nullable=False)
    entity = Column(String(64), nullable=False)
    entity_id = Column(String(36), nullable=False, index=True)
    old_values = Column(JSON)
    new_values = Column(JSON)
    details = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
