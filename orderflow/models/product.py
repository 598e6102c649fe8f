from sqlalchemy import Column, Integer, String, Numeric, Boolean, ForeignKey, DateTime, Index, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
from orderflow.db.base_class import Base
from orderflow.utils.pricing import round_currency, to_decimal


class Product(Base):
    """Catalog entry as seen by fulfillment. The catalog service owns everything but stock."""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("total_stock >= 0", name="ck_products_total_stock_non_negative"),
        CheckConstraint("sold_count >= 0", name="ck_products_sold_count_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, index=True)
    sku = Column(String(100), unique=True, nullable=True, index=True)
    image_url = Column(String(500), nullable=True)

    # Pricing
    price = Column(Numeric(10, 2), nullable=False)
    sale_price = Column(Numeric(10, 2), nullable=True)
    discount_percentage = Column(Integer, default=0, nullable=False)

    # Stock & Status (written only by the stock ledger)
    total_stock = Column(Integer, default=0, nullable=False)
    sold_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")

    @property
    def discounted_price(self) -> Decimal:
        if self.discount_percentage and self.discount_percentage > 0:
            return round_currency(to_decimal(self.price) * (100 - self.discount_percentage) / 100)
        if self.sale_price is not None:
            return round_currency(self.sale_price)
        return round_currency(self.price)

    @property
    def primary_image(self):
        return self.image_url


Index('idx_product_active', Product.is_active)


class ProductVariant(Base):
    """Handles Size + Color + Stock per variant"""
    __tablename__ = "product_variants"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_variants_stock_non_negative"),
        CheckConstraint("sold_count >= 0", name="ck_variants_sold_count_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)

    size = Column(String(10), nullable=True)  # S, M, L, XL, 38, 40, etc.
    color = Column(String(50), nullable=True)
    sku = Column(String(100), unique=True, nullable=False, index=True)

    stock_quantity = Column(Integer, default=0, nullable=False)
    sold_count = Column(Integer, default=0, nullable=False)
    additional_price = Column(Numeric(10, 2), default=0)  # Extra cost for this variant

    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    product = relationship("Product", back_populates="variants")

    @property
    def details(self) -> str:
        parts = []
        if self.size:
            parts.append(f"Size: {self.size}")
        if self.color:
            parts.append(f"Color: {self.color}")
        return ", ".join(parts)
