from sqlalchemy.orm import Session
import logging
from orderflow.models.coupon import Coupon
from orderflow.services.coupon_service import DEFAULT_COUPONS

logger = logging.getLogger(__name__)


def init_db(db: Session) -> None:
    """Initialize database with default data"""

    # Seed the launch coupons so COUPON_SOURCE=database behaves like the static table
    for definition in DEFAULT_COUPONS:
        existing = db.query(Coupon).filter(Coupon.code == definition.code).first()
        if not existing:
            coupon = Coupon(
                code=definition.code,
                description=f"Default {definition.discount_type.value} coupon",
                discount_type=definition.discount_type,
                discount_value=definition.discount_value,
                min_order_value=definition.min_order_value,
                max_discount=definition.max_discount,
                is_active=True,
            )
            db.add(coupon)
            logger.info("coupon_created code=%s", definition.code)

    db.commit()
    logger.info("database_initialized")


if __name__ == "__main__":
    from orderflow.db.session import SessionLocal
    db = SessionLocal()
    init_db(db)
    db.close()
