from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from order_engine.enums import (
    DeliveryOption,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    StoreCategory,
)

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


# Product specs, one shape per store category.

class FashionSpecs(BaseModel):
    kind: Literal["FASHION"] = "FASHION"
    sizes: List[str] = []
    colors: List[str] = []
    material: Optional[str] = None


class FoodSpecs(BaseModel):
    kind: Literal["FOOD"] = "FOOD"
    ingredients: List[str] = []
    allergens: List[str] = []
    prep_time_minutes: Optional[int] = None


class ElectronicsSpecs(BaseModel):
    kind: Literal["ELECTRONICS"] = "ELECTRONICS"
    brand: Optional[str] = None
    model: Optional[str] = None
    warranty: Optional[str] = None


class BeautySpecs(BaseModel):
    kind: Literal["BEAUTY"] = "BEAUTY"
    skin_type: Optional[str] = None
    volume_ml: Optional[int] = None


class GeneralSpecs(BaseModel):
    kind: Literal["GENERAL_RETAIL"] = "GENERAL_RETAIL"
    attributes: Dict[str, str] = {}


ProductSpecs = Annotated[
    Union[FashionSpecs, FoodSpecs, ElectronicsSpecs, BeautySpecs, GeneralSpecs],
    Field(discriminator="kind"),
]
_specs_adapter = TypeAdapter(ProductSpecs)


def specs_for_category(category, raw: Optional[dict]):
    """Coerce a raw catalog specs bag into the variant for the store category.

    Returns None when the bag is empty or does not fit the category's shape.
    """
    if not raw:
        return None
    kind = StoreCategory(category).value
    try:
        return _specs_adapter.validate_python({**raw, "kind": kind})
    except ValidationError:
        return None


class ProductSnapshot(BaseModel):
    name: str
    description: Optional[str] = None
    images: List[str] = []
    sku: Optional[str] = None
    specs: Optional[ProductSpecs] = None


# Requests

class CartLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(ge=1)


class CustomerInfo(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    phone: str = Field(min_length=10, max_length=15)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)


class DeliveryInfo(BaseModel):
    option: DeliveryOption
    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    area: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)


class CreateOrderRequest(BaseModel):
    store_id: str
    items: List[CartLine] = Field(min_length=1)
    customer: CustomerInfo
    delivery: DeliveryInfo
    payment_method: PaymentMethod
    customer_notes: Optional[str] = Field(default=None, max_length=1000)


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    merchant_notes: Optional[str] = Field(default=None, max_length=500)
    tracking_url: Optional[str] = Field(default=None, max_length=500)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class InitializePaymentRequest(BaseModel):
    order_id: str
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str
    callback_url: Optional[str] = None


# Responses

class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    price: Decimal
    quantity: int
    subtotal: Decimal
    product_snapshot: Dict[str, Any]


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    store_id: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    status: OrderStatus
    status_history: List[StatusHistoryEntry]
    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    delivery_option: DeliveryOption
    delivery_address: Optional[str] = None
    delivery_city: Optional[str] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    tracking_url: Optional[str] = None
    cancellation_reason: Optional[str] = None
    placed_at: datetime
    items: List[OrderItemOut]


class OrderDetailOut(OrderOut):
    is_merchant: bool = False


class OrderPage(BaseModel):
    orders: List[OrderOut]
    total: int
    page: int
    limit: int
    total_pages: int


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    reference: str
    webhook_received: bool
    poll_verified: bool
    verified_at: Optional[datetime] = None


class InitializePaymentResponse(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str
    payment: PaymentOut


class VerifyPaymentResponse(BaseModel):
    verified: bool
    message: str
    payment: PaymentOut
