from sqlalchemy import Column, Integer, String, Numeric, Boolean, ForeignKey, DateTime, Enum, Text, JSON, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from orderflow.db.base_class import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    COD = "cod"  # Cash on Delivery
    BANK_TRANSFER = "bank_transfer"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_key = Column(String(64), unique=True, nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    idempotency_key = Column(String(64), nullable=True)

    # Snapshots
    shipping_address = Column(JSON, nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    payment_result = Column(JSON, nullable=True)
    currency = Column(String(3), nullable=False)

    # Pricing
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax_price = Column(Numeric(10, 2), default=0, nullable=False)
    shipping_price = Column(Numeric(10, 2), default=0, nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    discount_code = Column(String(50), nullable=True)
    discount_type = Column(String(20), nullable=True)
    total_price = Column(Numeric(10, 2), nullable=False)

    # Status & Tracking
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    tracking_number = Column(String(100), nullable=True)
    shipping_carrier = Column(String(100), nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)

    is_paid = Column(Boolean, default=False, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    is_delivered = Column(Boolean, default=False, nullable=False, index=True)
    delivered_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    # Stock reservation held by this order (see StockLedger)
    stock_reserved = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
    )

    @property
    def can_cancel(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.CONFIRMED) and not self.is_paid

    @property
    def can_refund(self) -> bool:
        return bool(self.is_paid) and self.status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED)


Index("ix_orders_user_created_at", Order.user_id, Order.created_at)
Index("ix_orders_status_created_at", Order.status, Order.created_at)
# One order per (user, idempotency key), enforced by the database
Index("uq_orders_user_idempotency_key", Order.user_id, Order.idempotency_key, unique=True)
