from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime


def normalize_selector(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class CartItemCreate(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(default=1, ge=1)
    size: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, max_length=50)

    @field_validator("size", "color")
    @classmethod
    def strip_selectors(cls, value: Optional[str]) -> Optional[str]:
        return normalize_selector(value)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=0)


class ApplyCouponRequest(BaseModel):
    coupon_code: str = Field(..., min_length=1, max_length=50)


class CartItemResponse(BaseModel):
    id: int
    product_id: Optional[int]
    product_name: Optional[str] = None
    product_image: Optional[str] = None
    size: Optional[str]
    color: Optional[str]
    quantity: int
    unit_price: float
    total_price: float
    added_at: Optional[datetime] = None


class CartSummaryResponse(BaseModel):
    total_items: int
    subtotal: float
    discount: float
    coupon_code: Optional[str] = None
    final_total: float
    is_empty: bool


class CartResponse(BaseModel):
    id: int
    items: List[CartItemResponse]
    coupon_code: Optional[str]
    discount_type: Optional[str]
    last_modified: datetime
    summary: CartSummaryResponse


class CartValidationResponse(BaseModel):
    is_valid: bool
    errors: List[str]
    cart: Optional[CartResponse] = None
