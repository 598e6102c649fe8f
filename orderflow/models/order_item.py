from sqlalchemy import Column, ForeignKey, Integer, Numeric, String, event
from sqlalchemy.orm import relationship

from orderflow.core.exceptions import ImmutableOrderItem
from orderflow.db.base_class import Base


class OrderItem(Base):
    """
    Line snapshot captured at checkout. Never updated afterwards.

    Two shapes share the table, discriminated by ``kind``:
    ``ResolvedOrderItem`` points at the catalog product it was priced from,
    ``UnresolvedOrderItem`` carries only what the caller supplied.
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)

    product_name = Column(String(200), nullable=False)
    size = Column(String(10), nullable=True)
    color = Column(String(50), nullable=True)
    image = Column(String(500), nullable=True)
    sku = Column(String(100), nullable=True)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    __mapper_args__ = {
        "polymorphic_on": kind,
        "polymorphic_identity": "item",
    }

    @property
    def is_resolved(self) -> bool:
        return False


class ResolvedOrderItem(OrderItem):
    # Weak reference: catalog deletions null it out, the snapshot stays
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="SET NULL"), nullable=True)

    product = relationship("Product")

    __mapper_args__ = {"polymorphic_identity": "resolved"}

    @property
    def is_resolved(self) -> bool:
        return True


class UnresolvedOrderItem(OrderItem):
    __mapper_args__ = {"polymorphic_identity": "unresolved"}


@event.listens_for(OrderItem, "before_update", propagate=True)
def _reject_item_update(mapper, connection, target):
    raise ImmutableOrderItem(f"Order item {target.id} is an immutable snapshot")
