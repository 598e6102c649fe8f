from fastapi import HTTPException, status
from typing import Optional


class DomainError(HTTPException):
    """Recoverable business error surfaced as a structured 4xx response."""

    code = "domain_error"

    def __init__(self, status_code: int, message: str):
        super().__init__(
            status_code=status_code,
            detail={"message": message, "errors": [{"code": self.code}]},
        )
        self.message = message


class ProductNotFound(DomainError):
    code = "product_not_found"

    def __init__(self):
        super().__init__(status.HTTP_404_NOT_FOUND, "Product not found")


class ProductUnavailable(DomainError):
    code = "product_unavailable"

    def __init__(self, name: str):
        super().__init__(status.HTTP_400_BAD_REQUEST, f"{name} is not available")


class VariantNotFound(DomainError):
    code = "variant_not_found"

    def __init__(self, size: Optional[str] = None, color: Optional[str] = None):
        selectors = ", ".join(
            part for part in (f"size={size}" if size else "", f"color={color}" if color else "") if part
        )
        super().__init__(
            status.HTTP_404_NOT_FOUND,
            f"Product variant not found ({selectors or 'no selectors'})",
        )


class OutOfStock(DomainError):
    code = "out_of_stock"

    def __init__(self, available: int, message: Optional[str] = None):
        super().__init__(
            status.HTTP_400_BAD_REQUEST,
            message or f"Out of stock. Only {available} items available",
        )
        self.available = available


class InsufficientStock(OutOfStock):
    code = "insufficient_stock"

    def __init__(self, available: int):
        super().__init__(available, f"Insufficient stock. Only {available} items available")


class QuantityLimitExceeded(DomainError):
    code = "quantity_limit_exceeded"

    def __init__(self, limit: int, requested: int):
        super().__init__(
            status.HTTP_400_BAD_REQUEST,
            f"Maximum quantity per item is {limit}, {requested} requested",
        )
        self.limit = limit


class CartEmpty(DomainError):
    code = "cart_empty"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "Cart is empty")


class CartItemNotFound(DomainError):
    code = "cart_item_not_found"

    def __init__(self):
        super().__init__(status.HTTP_404_NOT_FOUND, "Cart item not found")


class CartConflict(DomainError):
    code = "cart_conflict"

    def __init__(self):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "Cart was modified concurrently, please retry",
        )


class InvalidCoupon(DomainError):
    code = "invalid_coupon"

    def __init__(self, message: str = "Invalid coupon code"):
        super().__init__(status.HTTP_400_BAD_REQUEST, message)


class MinimumNotMet(DomainError):
    code = "minimum_not_met"

    def __init__(self, minimum):
        super().__init__(
            status.HTTP_400_BAD_REQUEST,
            f"Minimum order amount of {minimum} required for this coupon",
        )
        self.minimum = minimum


class CouponAlreadyApplied(DomainError):
    code = "coupon_already_applied"

    def __init__(self, coupon_code: str):
        super().__init__(status.HTTP_409_CONFLICT, f"Coupon {coupon_code} is already applied")


class NoCouponApplied(DomainError):
    code = "no_coupon_applied"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "No coupon applied to cart")


class OrderNotFound(DomainError):
    code = "order_not_found"

    def __init__(self):
        super().__init__(status.HTTP_404_NOT_FOUND, "Order not found")


class NotOwner(DomainError):
    code = "not_owner"

    def __init__(self):
        super().__init__(status.HTTP_403_FORBIDDEN, "Not authorized to access this order")


class IllegalTransition(DomainError):
    code = "illegal_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Cannot transition from {current} to {requested}",
        )
        self.current = current
        self.requested = requested


class OrderNotCancellable(DomainError):
    code = "order_not_cancellable"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "This order cannot be cancelled")


class InvalidPaymentResult(DomainError):
    code = "invalid_payment_result"

    def __init__(self, message: str):
        super().__init__(status.HTTP_400_BAD_REQUEST, message)


class StockLedgerError(HTTPException):
    """Ledger invariant broken (e.g. restoring more than was sold). Not user-correctable."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=message,
        )
        self.message = message


class ImmutableOrderItem(Exception):
    pass
