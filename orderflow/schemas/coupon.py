from pydantic import BaseModel, Field, model_validator
from typing import Optional
from decimal import Decimal
from orderflow.models.coupon import DiscountType


class CouponDefinition(BaseModel):
    """Discount rule as returned by a coupon resolver."""
    code: str = Field(..., min_length=1, max_length=50)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0)
    min_order_value: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount: Optional[Decimal] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_percentage(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        return self

    class Config:
        from_attributes = True
