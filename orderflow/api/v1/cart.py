from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from orderflow.api.deps import get_current_active_user
from orderflow.core.rate_limiter import limiter
from orderflow.db.session import get_db
from orderflow.models.cart import Cart
from orderflow.models.user import User
from orderflow.schemas.cart import (
    ApplyCouponRequest,
    CartItemCreate,
    CartItemResponse,
    CartItemUpdate,
    CartResponse,
    CartSummaryResponse,
    CartValidationResponse,
)
from orderflow.services.cart_service import CartService
from orderflow.utils.response import error, success

router = APIRouter()


def build_cart_response(cart: Cart) -> dict:
    items_response = []
    for item in cart.items:
        product = item.product
        items_response.append(
            CartItemResponse(
                id=item.id,
                product_id=item.product_id,
                product_name=product.name if product else None,
                product_image=product.primary_image if product else None,
                size=item.size,
                color=item.color,
                quantity=item.quantity,
                unit_price=item.price,
                total_price=item.line_total,
                added_at=item.added_at,
            )
        )

    return CartResponse(
        id=cart.id,
        items=items_response,
        coupon_code=cart.coupon_code,
        discount_type=cart.discount_type.value if cart.discount_type else None,
        last_modified=cart.last_modified,
        summary=CartSummaryResponse(**cart.get_summary()),
    ).model_dump()


@router.get("", response_model=dict)
@limiter.limit("60/minute")
def get_cart(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Get user's cart"""
    cart = CartService.get_cart(db, current_user.id)
    return success(data=build_cart_response(cart), message="Cart retrieved")


@router.post("/items", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def add_to_cart(
    request: Request,
    cart_item: CartItemCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Add item to cart, merging with an existing line for the same product, size and color"""
    cart = CartService.add_item(
        db,
        current_user.id,
        product_id=cart_item.product_id,
        quantity=cart_item.quantity,
        size=cart_item.size,
        color=cart_item.color,
    )
    return success(data=build_cart_response(cart), message="Item added to cart")


@router.put("/items/{item_id}")
@limiter.limit("30/minute")
def update_cart_item(
    request: Request,
    item_id: int,
    update_data: CartItemUpdate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Update cart item quantity (0 removes the item)"""
    cart = CartService.update_item_quantity(db, current_user.id, item_id, update_data.quantity)
    return success(data=build_cart_response(cart), message="Cart item updated")


@router.delete("/items/{item_id}")
@limiter.limit("30/minute")
def remove_from_cart(
    request: Request,
    item_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Remove item from cart"""
    cart = CartService.remove_item(db, current_user.id, item_id)
    return success(data=build_cart_response(cart), message="Item removed from cart")


@router.delete("")
@limiter.limit("30/minute")
def clear_cart(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Clear entire cart"""
    cart = CartService.clear(db, current_user.id)
    return success(data=build_cart_response(cart), message="Cart cleared")


@router.post("/coupon")
@limiter.limit("20/minute")
def apply_coupon(
    request: Request,
    payload: ApplyCouponRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    cart = CartService.apply_coupon(db, current_user.id, payload.coupon_code)
    return success(data=build_cart_response(cart), message="Coupon applied successfully")


@router.delete("/coupon")
@limiter.limit("20/minute")
def remove_coupon(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    cart = CartService.remove_coupon(db, current_user.id)
    return success(data=build_cart_response(cart), message="Coupon removed successfully")


@router.get("/summary", response_model=dict)
@limiter.limit("60/minute")
def get_cart_summary(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    summary = CartService.get_summary(db, current_user.id)
    return success(data=CartSummaryResponse(**summary).model_dump(), message="Cart summary retrieved")


@router.post("/validate")
@limiter.limit("20/minute")
def validate_cart(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Validate cart items before checkout. Drifted prices are refreshed, unavailable lines dropped."""
    is_valid, errors, cart = CartService.validate_cart(db, current_user.id)
    if not is_valid:
        return error(
            message="Cart validation failed",
            errors=[{"code": "cart_item_invalid", "message": message} for message in errors],
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    validation = CartValidationResponse(is_valid=True, errors=[], cart=build_cart_response(cart))
    return success(data=validation.model_dump(), message="Cart is valid")
