import os

os.environ["DATABASE_URL"] = "sqlite:///./test_app.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["SMS_ENABLED"] = "false"

import hashlib
import hmac
import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from order_engine.auth import MerchantDirectory
from order_engine.database import Base, scoped_session_factory
from order_engine.enums import DeliveryOption, PaymentMethod
from order_engine.models import Merchant, Product, ProductVariant, SettlementAccount, Store
from order_engine.orders import OrderService
from order_engine.payments import PaymentService
from order_engine.processor import PaystackClient
from order_engine.repository import OrderRepository
from order_engine.schemas import CartLine, CustomerInfo, DeliveryInfo

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_engine.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False, "timeout": 15})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
test_session_scope = scoped_session_factory(TestingSessionLocal)

WEBHOOK_SECRET = "sk_test_secret"
MERCHANT_USER = "user-merchant-1"
OTHER_MERCHANT_USER = "user-merchant-2"
CUSTOMER_PHONE = "0244123456"
CUSTOMER_EMAIL = "ama@example.com"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def dispatch(self, event):
        self.events.append(event)


class RecordingAudit:
    def __init__(self):
        self.entries = []

    def record(self, action, entity, entity_id, actor_id=None, old_value=None, new_value=None, metadata=None):
        self.entries.append({
            "action": getattr(action, "value", action),
            "entity": entity,
            "entity_id": entity_id,
            "actor_id": actor_id,
            "old_value": old_value,
            "new_value": new_value,
            "metadata": metadata,
        })


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def charge_success_body(reference: str, amount: int = 2000) -> bytes:
    return json.dumps({
        "event": "charge.success",
        "data": {"reference": reference, "amount": amount, "status": "success"},
    }).encode()


def bearer(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, "test-jwt-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def catalog():
    """One merchant with a linked sub-account, one without, and a small catalog."""
    with test_session_scope() as db:
        merchant = Merchant(user_id=MERCHANT_USER, business_name="Ama's Closet", primary_phone="0200000001")
        other = Merchant(user_id=OTHER_MERCHANT_USER, business_name="Kofi Foods", primary_phone="0200000002")
        db.add_all([merchant, other])
        db.flush()

        db.add(SettlementAccount(merchant_id=merchant.id, subaccount_code="ACCT_ama", is_active=True))

        store = Store(merchant_id=merchant.id, name="Ama's Closet", category="FASHION",
                      status="ACTIVE", is_published=True)
        other_store = Store(merchant_id=other.id, name="Kofi Foods", category="FOOD",
                            status="ACTIVE", is_published=True)
        draft_store = Store(merchant_id=merchant.id, name="Ama's Draft", category="FASHION",
                            status="DRAFT", is_published=False)
        db.add_all([store, other_store, draft_store])
        db.flush()

        dress = Product(store_id=store.id, name="Kente Dress", description="Handwoven", sku="KD-1",
                        images=["dress.jpg"], price=Decimal("10.00"), track_inventory=True, stock_quantity=5,
                        specs={"sizes": ["S", "M"], "colors": ["gold"]})
        scarf = Product(store_id=store.id, name="Silk Scarf", price=Decimal("7.50"),
                        track_inventory=True, stock_quantity=10)
        bag = Product(store_id=store.id, name="Raffia Bag", price=Decimal("30.00"),
                      track_inventory=False, stock_quantity=None)
        retired = Product(store_id=store.id, name="Old Hat", price=Decimal("5.00"), is_available=False)
        shirt = Product(store_id=store.id, name="Batik Shirt", price=Decimal("25.00"),
                        track_inventory=True, stock_quantity=0)
        jollof = Product(store_id=other_store.id, name="Jollof", price=Decimal("12.00"),
                         track_inventory=False)
        db.add_all([dress, scarf, bag, retired, shirt, jollof])
        db.flush()

        large = ProductVariant(product_id=shirt.id, name="XL", price=Decimal("28.00"), stock_quantity=4)
        sold_out = ProductVariant(product_id=shirt.id, name="XXL", stock_quantity=2, is_available=False)
        db.add_all([large, sold_out])
        db.flush()

        return SimpleNamespace(
            merchant_id=merchant.id,
            other_merchant_id=other.id,
            store_id=store.id,
            other_store_id=other_store.id,
            draft_store_id=draft_store.id,
            dress_id=dress.id,
            scarf_id=scarf.id,
            bag_id=bag.id,
            retired_id=retired.id,
            shirt_id=shirt.id,
            jollof_id=jollof.id,
            large_variant_id=large.id,
            sold_out_variant_id=sold_out.id,
        )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def repository():
    return OrderRepository(test_session_scope)


@pytest.fixture
def order_service(repository, notifier, audit):
    return OrderService(repository, MerchantDirectory(test_session_scope), notifier, audit)


@pytest.fixture
def processor():
    return PaystackClient(WEBHOOK_SECRET, "https://api.paystack.test", timeout=5)


@pytest.fixture
def payment_service(repository, processor, notifier, audit):
    return PaymentService(repository, processor, notifier, audit, currency="GHS")


@pytest.fixture
def place_order(order_service, catalog):
    """Place an order for two Kente Dresses (stock 5, 10.00 each), pickup, cash on delivery."""

    def _place(lines=None, delivery=None, payment_method=PaymentMethod.CASH_ON_DELIVERY, store_id=None):
        lines = lines or [CartLine(product_id=catalog.dress_id, quantity=2)]
        return order_service.create_order(
            store_id or catalog.store_id,
            lines,
            CustomerInfo(name="Ama Mensah", phone=CUSTOMER_PHONE, email=CUSTOMER_EMAIL),
            delivery or DeliveryInfo(option=DeliveryOption.PICKUP),
            payment_method,
        )

    return _place


def stock_of(product_id):
    with test_session_scope() as db:
        return db.get(Product, product_id).stock_quantity


def variant_stock_of(variant_id):
    with test_session_scope() as db:
        return db.get(ProductVariant, variant_id).stock_quantity
