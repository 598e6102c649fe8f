from typing import Optional

from celery import shared_task
from orderflow.db.session import SessionLocal
from orderflow.services.cart_service import CartService


@shared_task(bind=True, max_retries=3)
def cleanup_abandoned_carts(self, max_age_days: Optional[int] = None):
    """Delete empty carts untouched for ABANDONED_CART_DAYS. Runs daily via Celery Beat."""
    db = SessionLocal()
    try:
        return CartService.cleanup_abandoned_carts(db, max_age_days)
    except Exception as exc:
        raise self.retry(exc=exc, countdown=300)
    finally:
        db.close()
