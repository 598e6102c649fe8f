from celery import shared_task
from orderflow.db.session import SessionLocal
from orderflow.services.order_service import OrderService


@shared_task(bind=True, max_retries=3)
def expire_pending_orders(self):
    """
    Cancel unpaid online-payment orders whose payment window has passed.
    Runs periodically via Celery Beat.
    """
    db = SessionLocal()
    try:
        return OrderService.expire_pending_orders(db)
    except Exception as exc:
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
