from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional
import structlog

from orderflow.core.config import settings
from orderflow.core.exceptions import (
    IllegalTransition,
    NotOwner,
    OrderNotCancellable,
    OrderNotFound,
    ProductNotFound,
    VariantNotFound,
)
from orderflow.models.order import Order, OrderStatus
from orderflow.models.order_status_history import OrderStatusHistory
from orderflow.models.user import User, UserRole
from orderflow.schemas.order_tracking import OrderTrackingResponse, OrderStatusHistoryResponse
from orderflow.services.notification_service import notify_status_change
from orderflow.services.stock_ledger import StockLedger

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED, OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(current: OrderStatus, new_status: OrderStatus) -> bool:
    return new_status in ALLOWED_TRANSITIONS[current]


def _release_reserved_stock(db: Session, order: Order) -> None:
    """Give back the units this order took at checkout. No-op without a reservation."""
    if not order.stock_reserved:
        return

    ledger = StockLedger(db)
    for item in order.items:
        if not item.is_resolved or item.product_id is None:
            continue
        try:
            ledger.restore(item.product_id, item.size, item.color, item.quantity, variant_id=item.variant_id)
        except (ProductNotFound, VariantNotFound):
            logger.warning(
                "stock_restore_skipped",
                order_id=order.id,
                order_item_id=item.id,
                product_id=item.product_id,
            )

    order.stock_reserved = False


class OrderTrackingService:

    @staticmethod
    def get_order(db: Session, order_id: int, for_update: bool = False) -> Order:
        query = db.query(Order).filter(Order.id == order_id)
        if for_update:
            query = query.with_for_update()
        order = query.first()
        if not order:
            raise OrderNotFound()
        return order

    @staticmethod
    def apply_transition(
        db: Session,
        order: Order,
        new_status: OrderStatus,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        tracking_number: Optional[str] = None,
        shipping_carrier: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
        cancel_reason: Optional[str] = None,
    ) -> Order:
        """
        Move ``order`` to ``new_status`` and append exactly one history row.

        Raises IllegalTransition for any pair outside ALLOWED_TRANSITIONS.
        Applies the per-status side effects (timestamps, delivery flag, stock
        release on cancellation) but does not commit.
        """
        current = order.status
        if not can_transition(current, new_status):
            raise IllegalTransition(current.value, new_status.value)

        now = datetime.utcnow()

        if tracking_number:
            order.tracking_number = tracking_number
        if shipping_carrier:
            order.shipping_carrier = shipping_carrier
        if estimated_delivery:
            order.estimated_delivery = estimated_delivery

        order.status = new_status

        if new_status == OrderStatus.CONFIRMED:
            order.confirmed_at = now
            order.expires_at = None
        elif new_status == OrderStatus.SHIPPED:
            order.shipped_at = now
            if not order.estimated_delivery:
                order.estimated_delivery = now + timedelta(days=settings.DEFAULT_DELIVERY_DAYS)
        elif new_status == OrderStatus.DELIVERED:
            if not order.is_delivered:
                order.is_delivered = True
                order.delivered_at = now
        elif new_status == OrderStatus.CANCELLED:
            order.cancelled_at = now
            order.cancel_reason = cancel_reason or note
            order.expires_at = None
            _release_reserved_stock(db, order)
        elif new_status == OrderStatus.REFUNDED:
            order.refunded_at = now

        db.add(
            OrderStatusHistory(
                order_id=order.id,
                old_status=current.value,
                status=new_status.value,
                changed_by=actor_id,
                note=note,
                created_at=now,
            )
        )

        logger.info(
            "order_status_changed",
            order_id=order.id,
            order_number=order.order_number,
            old_status=current.value,
            new_status=new_status.value,
            changed_by=actor_id,
        )
        return order

    @staticmethod
    def update_status(
        db: Session,
        order_id: int,
        new_status: OrderStatus,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        tracking_number: Optional[str] = None,
        shipping_carrier: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
    ) -> Order:
        """Admin status change. Commits and queues a status notification."""
        try:
            order = OrderTrackingService.get_order(db, order_id, for_update=True)
            old_status = order.status.value
            OrderTrackingService.apply_transition(
                db,
                order,
                new_status,
                note=note,
                actor_id=actor_id,
                tracking_number=tracking_number,
                shipping_carrier=shipping_carrier,
                estimated_delivery=estimated_delivery,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        notify_status_change(order.id, old_status, new_status.value)
        return order

    @staticmethod
    def cancel_order(db: Session, order_id: int, user: User, reason: Optional[str] = None) -> Order:
        """Self-service cancellation by the order's owner."""
        try:
            order = OrderTrackingService.get_order(db, order_id, for_update=True)
            if order.user_id != user.id:
                raise NotOwner()
            if not order.can_cancel:
                raise OrderNotCancellable()

            old_status = order.status.value
            reason = reason or "Cancelled by customer"
            OrderTrackingService.apply_transition(
                db,
                order,
                OrderStatus.CANCELLED,
                note=reason,
                actor_id=user.id,
                cancel_reason=reason,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        notify_status_change(order.id, old_status, OrderStatus.CANCELLED.value)
        return order

    @staticmethod
    def get_order_tracking(db: Session, order_id: int, user: User) -> OrderTrackingResponse:
        """Tracking view. Owners see their own orders, admins see all."""
        order = OrderTrackingService.get_order(db, order_id)
        if order.user_id != user.id and user.role != UserRole.ADMIN:
            raise NotOwner()

        history = db.query(OrderStatusHistory, User.full_name.label('changer_name')).outerjoin(
            User, OrderStatusHistory.changed_by == User.id
        ).filter(OrderStatusHistory.order_id == order_id).order_by(OrderStatusHistory.id).all()

        history_responses = [
            OrderStatusHistoryResponse(
                id=h.OrderStatusHistory.id,
                order_id=h.OrderStatusHistory.order_id,
                old_status=h.OrderStatusHistory.old_status,
                status=h.OrderStatusHistory.status,
                changed_by=h.OrderStatusHistory.changed_by,
                changer_name=h.changer_name,
                note=h.OrderStatusHistory.note,
                created_at=h.OrderStatusHistory.created_at
            ) for h in history
        ]

        return OrderTrackingResponse(
            order_id=order.id,
            order_number=order.order_number,
            current_status=order.status.value,
            tracking_number=order.tracking_number,
            shipping_carrier=order.shipping_carrier,
            estimated_delivery=order.estimated_delivery,
            is_delivered=order.is_delivered,
            delivered_at=order.delivered_at,
            status_history=history_responses
        )
