from sqlalchemy.orm import Session
from sqlalchemy import and_, or_
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol
import structlog

from orderflow.core.config import settings
from orderflow.models.coupon import Coupon, DiscountType
from orderflow.schemas.coupon import CouponDefinition

logger = structlog.get_logger()


DEFAULT_COUPONS = (
    CouponDefinition(
        code="SAVE10",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("10"),
        min_order_value=Decimal("50"),
    ),
    CouponDefinition(
        code="FLAT20",
        discount_type=DiscountType.FIXED,
        discount_value=Decimal("20"),
        min_order_value=Decimal("100"),
    ),
    CouponDefinition(
        code="NEWUSER",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("15"),
        min_order_value=Decimal("0"),
    ),
)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CouponResolver(Protocol):
    def resolve(self, code: str) -> Optional[CouponDefinition]:
        ...


class InMemoryCouponResolver:
    """Fixed coupon table, used when COUPON_SOURCE=static and in tests."""

    def __init__(self, coupons: Optional[Iterable[CouponDefinition]] = None):
        source = DEFAULT_COUPONS if coupons is None else coupons
        self._coupons: Dict[str, CouponDefinition] = {normalize_code(c.code): c for c in source}

    def resolve(self, code: str) -> Optional[CouponDefinition]:
        return self._coupons.get(normalize_code(code))


class DatabaseCouponResolver:
    """Looks coupons up in the ``coupons`` table. Inactive or expired codes do not resolve."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, code: str) -> Optional[CouponDefinition]:
        coupon = self.db.query(Coupon).filter(
            and_(
                Coupon.code == normalize_code(code),
                Coupon.is_active == True,
                or_(Coupon.expiry_date.is_(None), Coupon.expiry_date > datetime.utcnow()),
            )
        ).first()

        if not coupon:
            return None

        return CouponDefinition.model_validate(coupon)


def get_coupon_resolver(db: Session) -> CouponResolver:
    if settings.COUPON_SOURCE == "static":
        return InMemoryCouponResolver()
    return DatabaseCouponResolver(db)
