from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple, TypeVar
import structlog

from orderflow.core.config import settings
from orderflow.core.exceptions import (
    CartConflict,
    CartEmpty,
    CartItemNotFound,
    CouponAlreadyApplied,
    InsufficientStock,
    InvalidCoupon,
    MinimumNotMet,
    NoCouponApplied,
    OutOfStock,
    ProductNotFound,
    ProductUnavailable,
    QuantityLimitExceeded,
    VariantNotFound,
)
from orderflow.models.cart import Cart, CartItem
from orderflow.models.product import Product, ProductVariant
from orderflow.services.coupon_service import CouponResolver, get_coupon_resolver, normalize_code
from orderflow.services.stock_ledger import StockLedger
from orderflow.utils.pricing import ZERO, round_currency, to_decimal

logger = structlog.get_logger()

T = TypeVar("T")

MAX_CART_WRITE_ATTEMPTS = 3


def current_unit_price(product: Product, variant: Optional[ProductVariant] = None) -> Decimal:
    price = product.discounted_price
    if variant is not None and variant.additional_price:
        price += to_decimal(variant.additional_price)
    return round_currency(price)


def _selector_key(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else None


def _write_with_retry(db: Session, user_id: int, operation: Callable[[], T]) -> T:
    """
    Run ``operation`` and commit. A concurrent writer bumping the cart version
    makes the flush fail with StaleDataError; the session is rolled back and
    the whole operation re-read and re-applied.
    """
    for attempt in range(1, MAX_CART_WRITE_ATTEMPTS + 1):
        try:
            result = operation()
            db.commit()
            return result
        except (StaleDataError, IntegrityError):
            db.rollback()
            logger.warning("cart_write_conflict", user_id=user_id, attempt=attempt)
        except Exception:
            db.rollback()
            raise

    logger.error("cart_write_conflict_exhausted", user_id=user_id, attempts=MAX_CART_WRITE_ATTEMPTS)
    raise CartConflict()


def _load_cart(db: Session, user_id: int) -> Cart:
    cart = db.query(Cart).filter(Cart.user_id == user_id).first()
    if not cart:
        cart = Cart(
            user_id=user_id,
            total_items=0,
            total_price=ZERO,
            discount_amount=ZERO,
            last_modified=datetime.utcnow(),
        )
        db.add(cart)
        db.flush()
        logger.info("cart_created", user_id=user_id, cart_id=cart.id)
    return cart


def _find_item(cart: Cart, item_id: int) -> CartItem:
    item = next((item for item in cart.items if item.id == item_id), None)
    if not item:
        raise CartItemNotFound()
    return item


def _recalculate(cart: Cart) -> None:
    """Refresh stored totals and re-derive the discount from the current items."""
    if cart.coupon_code:
        minimum = to_decimal(cart.discount_min_order)
        if cart.is_empty or cart.subtotal < minimum:
            logger.info(
                "cart_coupon_dropped",
                cart_id=cart.id,
                coupon_code=cart.coupon_code,
                subtotal=str(cart.subtotal),
                minimum=str(minimum),
            )
            cart.clear_discount()
        else:
            cart.discount_amount = cart.current_discount

    cart.total_items = sum(item.quantity for item in cart.items)
    cart.total_price = cart.subtotal
    cart.last_modified = datetime.utcnow()


def _item_available(ledger: StockLedger, item: CartItem) -> Tuple[Optional[Product], int]:
    """Current product and stock behind a cart line; (None, 0) when it cannot be bought."""
    if item.product_id is None:
        return None, 0
    product = item.product
    if product is None or not product.is_active:
        return product, 0
    try:
        return product, ledger.available(item.product_id, item.size, item.color)
    except (ProductNotFound, VariantNotFound):
        return product, 0


class CartService:

    @staticmethod
    def get_cart(db: Session, user_id: int) -> Cart:
        """Find or create the cart, dropping lines that can no longer be bought."""
        def operation() -> Cart:
            cart = _load_cart(db, user_id)
            ledger = StockLedger(db)

            dropped = []
            for item in list(cart.items):
                _, available = _item_available(ledger, item)
                if available <= 0:
                    dropped.append(item.id)
                    cart.items.remove(item)

            if dropped:
                _recalculate(cart)
                logger.info("cart_items_filtered", cart_id=cart.id, removed_item_ids=dropped)
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def add_item(
        db: Session,
        user_id: int,
        product_id: int,
        quantity: int = 1,
        size: Optional[str] = None,
        color: Optional[str] = None,
        unit_price: Optional[Decimal] = None,
    ) -> Cart:
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        def operation() -> Cart:
            ledger = StockLedger(db)
            product = ledger.get_product(product_id)
            if not product.is_active:
                raise ProductUnavailable(product.name)

            variant = ledger.resolve_variant(product, size, color)
            if variant is not None:
                available = variant.stock_quantity
                # Lines carry the variant's own spelling so "m/red" and "M/Red" share one
                line_size, line_color = variant.size, variant.color
            else:
                available = product.total_stock
                line_size, line_color = size, color

            cart = _load_cart(db, user_id)
            existing = next(
                (
                    item for item in cart.items
                    if item.product_id == product_id
                    and _selector_key(item.size) == _selector_key(line_size)
                    and _selector_key(item.color) == _selector_key(line_color)
                ),
                None,
            )

            new_quantity = quantity + (existing.quantity if existing else 0)
            if new_quantity > settings.MAX_ITEM_QUANTITY:
                raise QuantityLimitExceeded(settings.MAX_ITEM_QUANTITY, new_quantity)
            if new_quantity > available:
                raise OutOfStock(available)

            price = round_currency(unit_price) if unit_price is not None else current_unit_price(product, variant)

            if existing:
                existing.quantity = new_quantity
                existing.price = price
            else:
                cart.items.append(
                    CartItem(
                        product_id=product_id,
                        size=line_size,
                        color=line_color,
                        quantity=quantity,
                        price=price,
                        added_at=datetime.utcnow(),
                    )
                )

            _recalculate(cart)
            logger.info(
                "cart_item_added",
                cart_id=cart.id,
                product_id=product_id,
                size=line_size,
                color=line_color,
                quantity=new_quantity,
                merged=existing is not None,
            )
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def update_item_quantity(db: Session, user_id: int, item_id: int, quantity: int) -> Cart:
        """Set a line's quantity. Zero removes the line."""
        def operation() -> Cart:
            cart = _load_cart(db, user_id)
            item = _find_item(cart, item_id)

            if quantity <= 0:
                cart.items.remove(item)
                logger.info("cart_item_removed", cart_id=cart.id, item_id=item_id)
            else:
                if quantity > settings.MAX_ITEM_QUANTITY:
                    raise QuantityLimitExceeded(settings.MAX_ITEM_QUANTITY, quantity)
                if item.product_id is None:
                    raise ProductNotFound()

                available = StockLedger(db).available(item.product_id, item.size, item.color)
                if quantity > available:
                    raise InsufficientStock(available)

                item.quantity = quantity
                logger.info("cart_item_updated", cart_id=cart.id, item_id=item_id, quantity=quantity)

            _recalculate(cart)
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def remove_item(db: Session, user_id: int, item_id: int) -> Cart:
        def operation() -> Cart:
            cart = _load_cart(db, user_id)
            cart.items.remove(_find_item(cart, item_id))
            _recalculate(cart)
            logger.info("cart_item_removed", cart_id=cart.id, item_id=item_id)
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def clear(db: Session, user_id: int) -> Cart:
        """Empty the cart and drop any applied discount."""
        def operation() -> Cart:
            cart = _load_cart(db, user_id)
            cart.items.clear()
            cart.clear_discount()
            _recalculate(cart)
            logger.info("cart_cleared", cart_id=cart.id)
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def apply_coupon(
        db: Session,
        user_id: int,
        coupon_code: str,
        resolver: Optional[CouponResolver] = None,
    ) -> Cart:
        resolver = resolver or get_coupon_resolver(db)
        code = normalize_code(coupon_code)

        def operation() -> Cart:
            cart = _load_cart(db, user_id)
            if cart.is_empty:
                raise CartEmpty()
            if cart.coupon_code == code:
                raise CouponAlreadyApplied(code)

            coupon = resolver.resolve(code)
            if not coupon:
                raise InvalidCoupon()

            minimum = round_currency(coupon.min_order_value)
            if cart.subtotal < minimum:
                raise MinimumNotMet(minimum)

            replaced = cart.coupon_code
            cart.coupon_code = coupon.code
            cart.discount_type = coupon.discount_type
            cart.discount_value = coupon.discount_value
            cart.discount_max = coupon.max_discount
            cart.discount_min_order = minimum
            _recalculate(cart)

            logger.info(
                "cart_coupon_applied",
                cart_id=cart.id,
                coupon_code=coupon.code,
                replaced=replaced,
                discount=str(cart.discount_amount),
            )
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def remove_coupon(db: Session, user_id: int) -> Cart:
        def operation() -> Cart:
            cart = _load_cart(db, user_id)
            if not cart.coupon_code:
                raise NoCouponApplied()

            code = cart.coupon_code
            cart.clear_discount()
            _recalculate(cart)
            logger.info("cart_coupon_removed", cart_id=cart.id, coupon_code=code)
            return cart

        return _write_with_retry(db, user_id, operation)

    @staticmethod
    def get_summary(db: Session, user_id: int) -> dict:
        return CartService.get_cart(db, user_id).get_summary()

    @staticmethod
    def validate_cart(db: Session, user_id: int) -> Tuple[bool, List[str], Cart]:
        """
        Pre-checkout pass over the cart.

        Lines whose product vanished, was deactivated or lacks stock are
        dropped; prices that drifted are refreshed from the catalog. Every
        adjustment is reported as an error message.
        """
        def operation() -> Tuple[List[str], Cart]:
            cart = _load_cart(db, user_id)
            if cart.is_empty:
                raise CartEmpty()

            ledger = StockLedger(db)
            errors: List[str] = []

            for item in list(cart.items):
                product, available = _item_available(ledger, item)

                if product is None:
                    errors.append("Product no longer exists")
                    cart.items.remove(item)
                    continue

                if not product.is_active:
                    errors.append(f"{product.name} is no longer available")
                    cart.items.remove(item)
                    continue

                if available < item.quantity:
                    errors.append(
                        f"{product.name}: Only {available} items available, but {item.quantity} requested"
                    )
                    cart.items.remove(item)
                    continue

                variant = ledger.resolve_variant(product, item.size, item.color)
                price = current_unit_price(product, variant)
                if round_currency(item.price) != price:
                    errors.append(
                        f"{product.name}: Price has changed from {round_currency(item.price)} to {price}"
                    )
                    item.price = price

            _recalculate(cart)
            return errors, cart

        errors, cart = _write_with_retry(db, user_id, operation)
        logger.info("cart_validated", cart_id=cart.id, is_valid=not errors, error_count=len(errors))
        return not errors, errors, cart

    @staticmethod
    def cleanup_abandoned_carts(db: Session, max_age_days: Optional[int] = None) -> int:
        """Delete empty carts nobody has touched for ``max_age_days``."""
        max_age_days = settings.ABANDONED_CART_DAYS if max_age_days is None else max_age_days
        cutoff = datetime.utcnow() - timedelta(days=max_age_days)

        stale_carts = (
            db.query(Cart)
            .filter(Cart.last_modified < cutoff, ~Cart.items.any())
            .all()
        )
        for cart in stale_carts:
            db.delete(cart)
        db.commit()

        logger.info("abandoned_carts_cleaned", deleted=len(stale_carts), cutoff=cutoff.isoformat())
        return len(stale_carts)
