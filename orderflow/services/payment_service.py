import hashlib
import hmac
from datetime import datetime
from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.orm import Session

from orderflow.core.config import settings
from orderflow.core.exceptions import InvalidPaymentResult, OrderNotFound
from orderflow.models.order import Order, OrderStatus
from orderflow.schemas.payment import PaymentResult, PaymentWebhookPayload
from orderflow.services.notification_service import notify_status_change
from orderflow.services.order_tracking_service import OrderTrackingService
from orderflow.utils.pricing import round_currency

logger = structlog.get_logger()

PAYMENT_SUCCEEDED_EVENTS = {"payment.succeeded", "payment.captured"}


def verify_webhook_signature(payload: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded, keyed by PAYMENT_WEBHOOK_SECRET."""
    if not settings.PAYMENT_WEBHOOK_SECRET or not signature:
        return False

    generated_signature = hmac.new(
        settings.PAYMENT_WEBHOOK_SECRET.encode(),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(generated_signature, signature)


class PaymentReconciler:

    @staticmethod
    def _validate(order: Order, result: PaymentResult) -> None:
        if not result.is_successful:
            raise InvalidPaymentResult(f"Payment status '{result.status}' is not a successful payment")
        if result.currency != order.currency:
            raise InvalidPaymentResult(
                f"Payment currency {result.currency} does not match order currency {order.currency}"
            )
        if round_currency(result.amount) < round_currency(order.total_price):
            raise InvalidPaymentResult(
                f"Payment amount {round_currency(result.amount)} is less than order total "
                f"{round_currency(order.total_price)}"
            )

    @staticmethod
    def mark_paid(db: Session, order_id: int, result: PaymentResult) -> Order:
        """
        Record a successful payment against an order.

        The result is checked completely before anything is written. The paid
        flag flips through a conditional UPDATE, so replaying the same (or any
        later) result is a successful no-op. A pending order is advanced to
        confirmed by the system; a cancelled one keeps its status.
        """
        order = db.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise OrderNotFound()

        PaymentReconciler._validate(order, result)

        advanced_from = None
        try:
            updated = (
                db.query(Order)
                .filter(Order.id == order.id, Order.is_paid == False)
                .update(
                    {
                        Order.is_paid: True,
                        Order.paid_at: datetime.utcnow(),
                        Order.payment_result: result.model_dump(mode="json"),
                        Order.expires_at: None,
                    },
                    synchronize_session=False,
                )
            )
            if updated == 0:
                db.rollback()
                db.refresh(order)
                logger.info(
                    "payment_already_recorded",
                    order_id=order.id,
                    payment_id=result.id,
                )
                return order

            db.expire(order)
            if order.status == OrderStatus.PENDING:
                advanced_from = order.status.value
                OrderTrackingService.apply_transition(
                    db,
                    order,
                    OrderStatus.CONFIRMED,
                    note="Payment received",
                    actor_id=None,
                )
            elif order.status == OrderStatus.CANCELLED:
                logger.warning(
                    "payment_on_cancelled_order",
                    order_id=order.id,
                    payment_id=result.id,
                    amount=str(result.amount),
                )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("payment_reconcile_failed", order_id=order_id, payment_id=result.id)
            raise

        db.refresh(order)
        logger.info(
            "payment_reconciled",
            order_id=order.id,
            payment_id=result.id,
            amount=str(result.amount),
            status=order.status.value,
        )
        if advanced_from is not None:
            notify_status_change(order.id, advanced_from, order.status.value)
        return order

    @staticmethod
    def process_webhook(db: Session, payload: bytes, signature: Optional[str]) -> Optional[Order]:
        """
        Provider webhook adapter. Returns the reconciled order, or None for
        events that do not report a successful payment.
        """
        if not verify_webhook_signature(payload, signature):
            logger.warning("payment_webhook_signature_invalid")
            raise InvalidPaymentResult("Invalid webhook signature")

        try:
            event = PaymentWebhookPayload.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("payment_webhook_malformed", errors=exc.error_count())
            raise InvalidPaymentResult("Malformed payment webhook payload") from exc

        if event.event not in PAYMENT_SUCCEEDED_EVENTS:
            logger.info("payment_webhook_ignored", event=event.event, order_key=event.order_key)
            return None

        order = db.query(Order).filter(Order.order_key == event.order_key).first()
        if not order:
            raise OrderNotFound()

        return PaymentReconciler.mark_paid(db, order.id, event.payment)
