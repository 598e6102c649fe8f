from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, NamedTuple, Optional, Tuple
import uuid
import structlog

from orderflow.core.config import settings
from orderflow.core.exceptions import (
    CartEmpty,
    InvalidCoupon,
    MinimumNotMet,
    ProductUnavailable,
)
from orderflow.models.cart import Cart
from orderflow.models.order import Order, OrderStatus, PaymentMethod
from orderflow.models.order_item import OrderItem, ResolvedOrderItem, UnresolvedOrderItem
from orderflow.models.order_status_history import OrderStatusHistory
from orderflow.models.product import Product
from orderflow.models.user import User
from orderflow.schemas.order import OrderCreate
from orderflow.services.cart_service import CartService, current_unit_price
from orderflow.services.coupon_service import CouponResolver, get_coupon_resolver
from orderflow.services.notification_service import notify_order_confirmation
from orderflow.services.order_tracking_service import OrderTrackingService
from orderflow.services.stock_ledger import StockLedger
from orderflow.utils.pricing import (
    ZERO,
    apply_discount,
    calculate_shipping,
    calculate_tax,
    final_total,
    round_currency,
    to_decimal,
)

logger = structlog.get_logger()

PLACEHOLDER_IMAGE = "/placeholder-image.jpg"


class CheckoutLine(NamedTuple):
    product_id: Optional[int]
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None
    name: Optional[str] = None
    price: Optional[Decimal] = None
    image: Optional[str] = None


class Pricing(NamedTuple):
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


class AppliedDiscount(NamedTuple):
    code: str
    kind: str
    value: Decimal
    max_discount: Optional[Decimal]
    minimum: Decimal


def next_order_number(db: Session, now: Optional[datetime] = None) -> str:
    """``<PREFIX><YY><MM><DD><seq4>`` with the next free sequence for the day."""
    now = now or datetime.utcnow()
    day_prefix = f"{settings.ORDER_NUMBER_PREFIX}{now:%y%m%d}"

    last = (
        db.query(Order.order_number)
        .filter(Order.order_number.like(f"{day_prefix}%"))
        # Longest first: past 9999 the sequence widens and no longer sorts as text
        .order_by(func.length(Order.order_number).desc(), Order.order_number.desc())
        .first()
    )
    sequence = 1
    if last:
        try:
            sequence = int(last[0][len(day_prefix):]) + 1
        except ValueError:
            sequence = 1
    return f"{day_prefix}{sequence:04d}"


def generic_sku() -> str:
    return f"GENERIC-{uuid.uuid4().hex[:12].upper()}"


def snapshot_item(ledger: StockLedger, line: CheckoutLine) -> OrderItem:
    """
    Freeze one checkout line into an order item.

    A line whose product exists becomes a ResolvedOrderItem priced from the
    catalog. Only a line with no product row behind it becomes an
    UnresolvedOrderItem carrying the caller's name, price and image verbatim.

    Raises ProductUnavailable for an inactive product and VariantNotFound
    when the selectors match no active variant.
    """
    product = None
    variant = None
    if line.product_id is not None:
        product = ledger.db.query(Product).filter(Product.id == line.product_id).first()
        if product is not None:
            if not product.is_active:
                raise ProductUnavailable(product.name)
            variant = ledger.resolve_variant(product, line.size, line.color)

    if product is not None:
        unit_price = current_unit_price(product, variant)
        return ResolvedOrderItem(
            product_id=product.id,
            variant_id=variant.id if variant is not None else None,
            product_name=product.name,
            size=line.size if line.size is not None else getattr(variant, "size", None),
            color=line.color if line.color is not None else getattr(variant, "color", None),
            image=line.image or product.primary_image or PLACEHOLDER_IMAGE,
            sku=(variant.sku if variant is not None else None) or product.sku or f"PROD-{product.id}",
            quantity=line.quantity,
            unit_price=unit_price,
            total_price=round_currency(unit_price * line.quantity),
        )

    unit_price = round_currency(line.price) if line.price is not None else ZERO
    logger.info("order_item_unresolved", product_id=line.product_id, name=line.name)
    return UnresolvedOrderItem(
        product_name=line.name or "Unknown Product",
        size=line.size,
        color=line.color,
        image=line.image or PLACEHOLDER_IMAGE,
        sku=generic_sku(),
        quantity=line.quantity,
        unit_price=unit_price,
        total_price=round_currency(unit_price * line.quantity),
    )


def price_order(items: List[OrderItem], discount: Optional[AppliedDiscount]) -> Pricing:
    subtotal = round_currency(sum((to_decimal(item.total_price) for item in items), ZERO))
    discount_amount = ZERO
    if discount is not None:
        discount_amount = apply_discount(subtotal, discount.kind, discount.value, discount.max_discount)

    tax = calculate_tax(subtotal - discount_amount)
    shipping = calculate_shipping(subtotal, sum(item.quantity for item in items))
    total = final_total(subtotal, discount_amount, tax, shipping)
    return Pricing(subtotal, discount_amount, tax, shipping, total)


class OrderService:

    @staticmethod
    def _find_existing(db: Session, user_id: int, idempotency_key: str) -> Optional[Order]:
        return (
            db.query(Order)
            .filter(Order.user_id == user_id, Order.idempotency_key == idempotency_key)
            .first()
        )

    @staticmethod
    def _lines_from_cart(db: Session, user_id: int) -> Tuple[List[CheckoutLine], Optional[Cart]]:
        is_valid, errors, cart = CartService.validate_cart(db, user_id)
        if not is_valid:
            logger.info("checkout_cart_adjusted", user_id=user_id, errors=errors)

        lines = [
            CheckoutLine(
                product_id=item.product_id,
                quantity=item.quantity,
                size=item.size,
                color=item.color,
            )
            for item in cart.items
        ]
        return lines, cart

    @staticmethod
    def _resolve_discount(
        db: Session,
        coupon_code: Optional[str],
        cart: Optional[Cart],
        subtotal: Decimal,
        resolver: Optional[CouponResolver],
    ) -> Optional[AppliedDiscount]:
        if coupon_code:
            coupon = (resolver or get_coupon_resolver(db)).resolve(coupon_code)
            if not coupon:
                raise InvalidCoupon()
            minimum = round_currency(coupon.min_order_value)
            if subtotal < minimum:
                raise MinimumNotMet(minimum)
            return AppliedDiscount(
                coupon.code, coupon.discount_type.value, coupon.discount_value, coupon.max_discount, minimum
            )

        if cart is not None and cart.coupon_code:
            minimum = to_decimal(cart.discount_min_order)
            if subtotal < minimum:
                logger.info("checkout_cart_coupon_dropped", coupon_code=cart.coupon_code)
                return None
            return AppliedDiscount(
                cart.coupon_code,
                cart.discount_type.value,
                to_decimal(cart.discount_value),
                cart.discount_max,
                minimum,
            )
        return None

    @staticmethod
    def create_order(
        db: Session,
        user: User,
        order_data: OrderCreate,
        coupon_resolver: Optional[CouponResolver] = None,
    ) -> Tuple[Order, bool]:
        """
        Check out and return ``(order, created)``.

        Re-submitting an idempotency key already used by this user returns the
        existing order with ``created=False``.
        """
        existing_order = OrderService._find_existing(db, user.id, order_data.idempotency_key)
        if existing_order:
            logger.info("order_idempotent_replay", order_id=existing_order.id, user_id=user.id)
            return existing_order, False

        cart = None
        if order_data.items:
            lines = [
                CheckoutLine(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    size=item.size,
                    color=item.color,
                    name=item.name,
                    price=item.price,
                    image=item.image,
                )
                for item in order_data.items
            ]
        else:
            lines, cart = OrderService._lines_from_cart(db, user.id)

        if not lines:
            raise CartEmpty()

        reserve = settings.RESERVE_STOCK_AT_CHECKOUT if order_data.reserve_stock is None else order_data.reserve_stock

        # Order numbers are assigned optimistically; a unique collision restarts the attempt.
        for attempt in range(1, settings.ORDER_NUMBER_MAX_ATTEMPTS + 1):
            ledger = StockLedger(db)
            items = [snapshot_item(ledger, line) for line in lines]
            undiscounted = price_order(items, None)
            discount = OrderService._resolve_discount(
                db, order_data.coupon_code, cart, undiscounted.subtotal, coupon_resolver
            )
            pricing = price_order(items, discount)

            now = datetime.utcnow()
            order = Order(
                order_key=uuid.uuid4().hex,
                order_number=next_order_number(db, now),
                user_id=user.id,
                idempotency_key=order_data.idempotency_key,
                shipping_address=order_data.shipping_address.model_dump(mode="json"),
                payment_method=order_data.payment_method,
                currency=settings.CURRENCY,
                subtotal=pricing.subtotal,
                tax_price=pricing.tax,
                shipping_price=pricing.shipping,
                discount_amount=pricing.discount,
                discount_code=discount.code if discount else None,
                discount_type=discount.kind if discount else None,
                total_price=pricing.total,
                status=OrderStatus.PENDING,
                is_paid=False,
                is_delivered=False,
                stock_reserved=False,
                expires_at=(
                    None
                    if order_data.payment_method == PaymentMethod.COD
                    else now + timedelta(minutes=settings.PENDING_ORDER_TTL_MINUTES)
                ),
                notes=order_data.notes,
                created_at=now,
                updated_at=now,
            )
            order.items = items
            order.status_history = [
                OrderStatusHistory(
                    old_status=None,
                    status=OrderStatus.PENDING.value,
                    changed_by=user.id,
                    note="Order placed",
                    created_at=now,
                )
            ]

            try:
                db.add(order)
                db.flush()
            except IntegrityError:
                db.rollback()
                # A concurrent submit with the same key won the insert
                existing_order = OrderService._find_existing(db, user.id, order_data.idempotency_key)
                if existing_order:
                    logger.info("order_idempotent_replay", order_id=existing_order.id, user_id=user.id)
                    return existing_order, False
                logger.warning(
                    "order_number_collision",
                    order_number=order.order_number,
                    attempt=attempt,
                )
                continue

            try:
                if reserve:
                    for item in items:
                        if item.is_resolved:
                            ledger.decrement(
                                item.product_id, item.size, item.color, item.quantity, variant_id=item.variant_id
                            )
                    order.stock_reserved = True
                db.commit()
            except Exception:
                db.rollback()
                raise
            break
        else:
            logger.error("order_number_exhausted", user_id=user.id, attempts=settings.ORDER_NUMBER_MAX_ATTEMPTS)
            raise RuntimeError("Failed to generate a unique order number")

        db.refresh(order)
        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            user_id=user.id,
            total=str(order.total_price),
            item_count=len(items),
            stock_reserved=order.stock_reserved,
        )

        if cart is not None:
            try:
                CartService.clear(db, user.id)
            except Exception:
                logger.exception("cart_clear_failed", order_id=order.id, user_id=user.id)

        notify_order_confirmation(order.id)
        return order, True

    @staticmethod
    def list_orders(db: Session, user_id: int) -> List[Order]:
        return (
            db.query(Order)
            .filter(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    @staticmethod
    def expire_pending_orders(db: Session, now: Optional[datetime] = None) -> int:
        """
        Cancel unpaid, non-COD pending orders whose ``expires_at`` has passed.

        Goes through the status state machine so reserved stock is restored
        and the history records a system actor.
        """
        now = now or datetime.utcnow()

        expired_orders: List[Order] = (
            db.query(Order)
            .filter(
                Order.status == OrderStatus.PENDING,
                Order.is_paid == False,
                Order.payment_method != PaymentMethod.COD,
                Order.expires_at.isnot(None),
                Order.expires_at <= now,
            )
            .all()
        )

        cancelled_count = 0
        for order in expired_orders:
            try:
                OrderTrackingService.apply_transition(
                    db,
                    order,
                    OrderStatus.CANCELLED,
                    note="Payment window expired",
                    actor_id=None,
                    cancel_reason="Payment window expired",
                )
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("order_expiry_failed", order_id=order.id)
                continue

            logger.info(
                "order_expired",
                order_id=order.id,
                user_id=order.user_id,
                previous_status=OrderStatus.PENDING.value,
            )
            cancelled_count += 1

        return cancelled_count
