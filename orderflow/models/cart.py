from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
from orderflow.db.base_class import Base
from orderflow.models.coupon import DiscountType
from orderflow.utils.pricing import ZERO, apply_discount, final_total, round_currency


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    # Applied discount
    coupon_code = Column(String(50), nullable=True)
    discount_type = Column(Enum(DiscountType), nullable=True)
    discount_value = Column(Numeric(10, 2), nullable=True)
    discount_max = Column(Numeric(10, 2), nullable=True)
    discount_min_order = Column(Numeric(10, 2), nullable=True)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)

    # Recomputed on every mutation
    total_items = Column(Integer, default=0, nullable=False)
    total_price = Column(Numeric(10, 2), default=0, nullable=False)
    last_modified = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user = relationship("User", back_populates="cart")
    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )

    @property
    def subtotal(self) -> Decimal:
        return round_currency(sum((round_currency(item.price) * item.quantity for item in self.items), ZERO))

    @property
    def current_discount(self) -> Decimal:
        if not self.coupon_code:
            return ZERO
        return apply_discount(self.subtotal, self.discount_type, self.discount_value, self.discount_max)

    @property
    def final_total(self) -> Decimal:
        return final_total(self.subtotal, self.current_discount)

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    def clear_discount(self) -> None:
        self.coupon_code = None
        self.discount_type = None
        self.discount_value = None
        self.discount_max = None
        self.discount_min_order = None
        self.discount_amount = ZERO

    def get_summary(self) -> dict:
        """Derived purely from the current items and stored discount terms."""
        return {
            "total_items": sum(item.quantity for item in self.items),
            "subtotal": self.subtotal,
            "discount": self.current_discount,
            "coupon_code": self.coupon_code,
            "final_total": self.final_total,
            "is_empty": self.is_empty,
        }


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    # Weak reference: the product may be deleted later
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)

    size = Column(String(10), nullable=True)
    color = Column(String(50), nullable=True)
    quantity = Column(Integer, default=1, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # Captured when added

    added_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")

    @property
    def line_total(self) -> Decimal:
        return round_currency(round_currency(self.price) * self.quantity)
