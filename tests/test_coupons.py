from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from orderflow.db.init_db import init_db
from orderflow.models.coupon import Coupon, DiscountType
from orderflow.services.coupon_service import DatabaseCouponResolver, InMemoryCouponResolver


def test_static_resolver_normalizes_codes():
    coupon = InMemoryCouponResolver().resolve("  flat20 ")

    assert coupon.code == "FLAT20"
    assert coupon.discount_type == DiscountType.FIXED
    assert coupon.min_order_value == Decimal("100")
    assert InMemoryCouponResolver().resolve("UNKNOWN") is None


def test_init_db_seeds_default_coupons_once(db_session: Session):
    init_db(db_session)
    init_db(db_session)

    codes = sorted(code for (code,) in db_session.query(Coupon.code).all())
    assert codes == ["FLAT20", "NEWUSER", "SAVE10"]

    coupon = DatabaseCouponResolver(db_session).resolve("save10")
    assert coupon.discount_value == Decimal("10")
    assert coupon.min_order_value == Decimal("50")


def test_database_resolver_skips_inactive_and_expired(db_session: Session):
    db_session.add_all(
        [
            Coupon(code="OLD", discount_type=DiscountType.FIXED, discount_value=5, is_active=True,
                   expiry_date=datetime.utcnow() - timedelta(days=1)),
            Coupon(code="OFF", discount_type=DiscountType.FIXED, discount_value=5, is_active=False),
            Coupon(code="LIVE", discount_type=DiscountType.PERCENTAGE, discount_value=20,
                   max_discount=15, expiry_date=datetime.utcnow() + timedelta(days=1)),
        ]
    )
    db_session.commit()
    resolver = DatabaseCouponResolver(db_session)

    assert resolver.resolve("OLD") is None
    assert resolver.resolve("OFF") is None
    live = resolver.resolve("live")
    assert live.max_discount == Decimal("15")
