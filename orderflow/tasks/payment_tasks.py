from celery import shared_task
from celery.utils.log import get_task_logger

from orderflow.core.exceptions import DomainError
from orderflow.db.session import SessionLocal
from orderflow.schemas.payment import PaymentResult
from orderflow.services.payment_service import PaymentReconciler

logger = get_task_logger(__name__)


@shared_task(bind=True, max_retries=5)
def reconcile_payment(self, order_id: int, payment_result: dict):
    """
    Apply a payment outcome obtained by polling the provider.

    Rejected results (wrong amount, currency or status) are logged and not
    retried; infrastructure failures are.
    """
    result = PaymentResult.model_validate(payment_result)

    db = SessionLocal()
    try:
        order = PaymentReconciler.mark_paid(db, order_id, result)
        return {"order_id": order.id, "is_paid": order.is_paid, "status": order.status.value}
    except DomainError as exc:
        logger.warning("payment_reconcile_rejected order_id=%s reason=%s", order_id, exc.message)
        return {"order_id": order_id, "is_paid": False, "error": exc.code}
    except Exception as exc:
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()
