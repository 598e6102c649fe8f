from typing import List, Optional
from datetime import datetime
from decimal import Decimal
import uuid

import bleach
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from orderflow.models.order import OrderStatus, PaymentMethod
from orderflow.schemas.cart import normalize_selector


class ShippingAddress(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=5, max_length=20)
    address: str = Field(..., min_length=1, max_length=300)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(default="Pakistan", max_length=60)

    @field_validator("first_name", "last_name", "address", "city", "state", "zip_code", "country")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return bleach.clean(value, tags=[], attributes={}, strip=True).strip()


class OrderItemInput(BaseModel):
    """Ad-hoc checkout line. Unresolvable products fall back to the supplied name/price/image."""
    product_id: Optional[int] = Field(default=None, gt=0)
    name: Optional[str] = Field(default=None, max_length=200)
    price: Optional[Decimal] = Field(default=None, ge=0)
    quantity: int = Field(default=1, ge=1)
    size: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, max_length=50)
    image: Optional[str] = Field(default=None, max_length=500)

    @field_validator("size", "color")
    @classmethod
    def strip_selectors(cls, value: Optional[str]) -> Optional[str]:
        return normalize_selector(value)


class OrderCreate(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    items: Optional[List[OrderItemInput]] = None  # defaults to the user's cart
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    reserve_stock: Optional[bool] = None  # defaults to RESERVE_STOCK_AT_CHECKOUT
    notes: Optional[str] = None
    idempotency_key: str = Field(..., min_length=36, max_length=64)

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        sanitized = bleach.clean(value, tags=[], attributes={}, strip=True).strip()
        if len(sanitized) > 500:
            raise ValueError("Notes too long (max 500 chars)")
        return sanitized

    @field_validator("idempotency_key")
    @classmethod
    def validate_idempotency_key(cls, value: str) -> str:
        parsed = uuid.UUID(value)
        return str(parsed)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class OrderItemResponse(_CamelModel):
    id: int
    kind: str
    product_id: Optional[int] = None
    product_name: str
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float


class StatusHistoryEntry(_CamelModel):
    status: str
    old_status: Optional[str] = None
    note: Optional[str] = None
    changed_by: Optional[int] = None
    created_at: datetime


class OrderResponse(_CamelModel):
    id: int
    order_key: str
    order_number: str
    user_id: int
    status: OrderStatus
    status_history: List[StatusHistoryEntry]
    items: List[OrderItemResponse]
    shipping_address: dict
    payment_method: PaymentMethod
    payment_result: Optional[dict] = None
    currency: str
    subtotal: float
    tax_price: float
    shipping_price: float
    discount_amount: float
    discount_code: Optional[str] = None
    total_price: float
    is_paid: bool
    paid_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    shipping_carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    stock_reserved: bool
    can_cancel: bool
    can_refund: bool
    notes: Optional[str] = None
    created_at: datetime


def serialize_order(order) -> dict:
    """Persisted order -> JSON-ready dict with the stable camelCase keys."""
    return OrderResponse.model_validate(order).model_dump(by_alias=True)
