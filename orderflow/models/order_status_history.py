from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, event
from sqlalchemy.orm import relationship
from datetime import datetime
from orderflow.db.base_class import Base


class OrderStatusHistory(Base):
    """Append-only audit trail of order status changes."""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    old_status = Column(String(50), nullable=True)  # Previous status, null for the creation entry
    status = Column(String(50), nullable=False)

    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)  # null for system
    note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    order = relationship("Order", back_populates="status_history")
    changer = relationship("User")


@event.listens_for(OrderStatusHistory, "before_update")
def _reject_history_rewrite(mapper, connection, target):
    raise ValueError("Order status history is append-only")
