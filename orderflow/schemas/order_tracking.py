from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from orderflow.models.order import OrderStatus


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = Field(default=None, max_length=100)
    shipping_carrier: Optional[str] = Field(default=None, max_length=100)
    estimated_delivery: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=500)


class OrderStatusHistoryResponse(BaseModel):
    id: int
    order_id: int
    old_status: Optional[str]
    status: str
    changed_by: Optional[int]
    changer_name: Optional[str]  # Name of the admin who changed it
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class OrderTrackingResponse(BaseModel):
    order_id: int
    order_number: str
    current_status: str
    tracking_number: Optional[str]
    shipping_carrier: Optional[str]
    estimated_delivery: Optional[datetime]
    is_delivered: bool
    delivered_at: Optional[datetime]
    status_history: List[OrderStatusHistoryResponse]

    class Config:
        from_attributes = True
