from fastapi import APIRouter, Depends, Request, status
from typing import Optional
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from orderflow.api.deps import get_current_active_user, require_admin
from orderflow.core.exceptions import NotOwner
from orderflow.core.rate_limiter import limiter
from orderflow.db.session import get_db
from orderflow.models.user import User, UserRole
from orderflow.schemas.order import CancelOrderRequest, OrderCreate, serialize_order
from orderflow.schemas.order_tracking import OrderStatusUpdate
from orderflow.schemas.payment import PaymentResult
from orderflow.services.order_service import OrderService
from orderflow.services.order_tracking_service import OrderTrackingService
from orderflow.services.payment_service import PaymentReconciler
from orderflow.utils.response import success


router = APIRouter()


@router.post(
    "",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Create new order",
    description="""
Creates an order from the supplied items or, when none are given, from the
authenticated user's validated cart.

Process:
1. Returns the existing order when the idempotency key was already used
2. Snapshots every line (catalog price when the product resolves)
3. Applies the coupon, tax and shipping
4. Assigns the order number and persists the order as pending
5. Reserves stock (unless disabled for this order)
6. Clears the cart and queues the confirmation email
""",
    responses={
        201: {"description": "Order created successfully"},
        200: {"description": "Order already exists for this idempotency key"},
        400: {"description": "Cart empty, invalid coupon or insufficient stock"},
        401: {"description": "Authentication required"},
    },
    tags=["Orders"],
)
@limiter.limit("10/minute")
def create_order(
    request: Request,
    order_data: OrderCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Create order"""
    order, created = OrderService.create_order(db, current_user, order_data)

    if not created:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=success(data=serialize_order(order), message="Order already exists"),
        )

    return success(data=serialize_order(order), message="Order created successfully")


@router.get("", response_model=dict)
@limiter.limit("30/minute")
def get_user_orders(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Get user's order history"""
    orders = OrderService.list_orders(db, current_user.id)
    return success(data=[serialize_order(order) for order in orders], message="Orders retrieved")


@router.get("/{order_id}", response_model=dict)
@limiter.limit("30/minute")
def get_order_detail(
    request: Request,
    order_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Get order details"""
    order = OrderTrackingService.get_order(db, order_id)
    if order.user_id != current_user.id and current_user.role != UserRole.ADMIN:
        raise NotOwner()

    return success(data=serialize_order(order), message="Order detail retrieved")


@router.put("/{order_id}/cancel")
@limiter.limit("10/minute")
def cancel_order(
    request: Request,
    order_id: int,
    payload: Optional[CancelOrderRequest] = None,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Cancel order (owner only, while pending or confirmed and unpaid)"""
    order = OrderTrackingService.cancel_order(
        db, order_id, current_user, payload.reason if payload else None
    )
    return success(data=serialize_order(order), message="Order cancelled successfully")


# Order Tracking Endpoints

@router.put("/{order_id}/status", response_model=dict)
@limiter.limit("20/minute")
def update_order_status(
    request: Request,
    order_id: int,
    status_update: OrderStatusUpdate,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Update order status (admin only)."""
    order = OrderTrackingService.update_status(
        db,
        order_id,
        status_update.status,
        note=status_update.note,
        actor_id=current_user.id,
        tracking_number=status_update.tracking_number,
        shipping_carrier=status_update.shipping_carrier,
        estimated_delivery=status_update.estimated_delivery,
    )
    return success(data=serialize_order(order), message="Order status updated")


@router.put("/{order_id}/pay", response_model=dict)
@limiter.limit("20/minute")
def mark_order_paid(
    request: Request,
    order_id: int,
    payment_result: PaymentResult,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Record a payment reported out of band (admin only). Replays are no-ops."""
    order = PaymentReconciler.mark_paid(db, order_id, payment_result)
    return success(data=serialize_order(order), message="Order marked as paid")


@router.get("/{order_id}/tracking", response_model=dict)
@limiter.limit("30/minute")
def get_order_tracking(
    request: Request,
    order_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Get order tracking information."""
    tracking = OrderTrackingService.get_order_tracking(db, order_id, current_user)
    return success(data=tracking.model_dump(), message="Order tracking retrieved")
