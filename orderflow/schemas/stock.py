from typing import List, Optional

from pydantic import BaseModel, Field


class StockCheckItem(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    size: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, max_length=50)


class StockCheckRequest(BaseModel):
    items: List[StockCheckItem]


class InsufficientStockItem(BaseModel):
    product_id: int
    size: Optional[str] = None
    color: Optional[str] = None
    available_quantity: int
    requested_quantity: int
    message: str


class StockCheckResponse(BaseModel):
    available: bool
    insufficient_items: List[InsufficientStockItem]
