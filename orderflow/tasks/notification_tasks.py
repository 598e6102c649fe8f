from celery import Task
from celery.utils.log import get_task_logger
from email.message import EmailMessage
from typing import Optional

from orderflow.core.celery_app import celery_app
from orderflow.core.config import settings
from orderflow.utils.email import _send_email_smtp

logger = get_task_logger(__name__)


# -------------------------------
# Base Task (Retry-safe)
# -------------------------------
class NotificationTask(Task):
    """
    Base notification task with retries and backoff.
    Temporary SMTP failures are retried instead of dropping the message.
    """
    autoretry_for = (Exception,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True
    acks_late = True  # retry if worker crashes


# -------------------------------
# Helper: Build Email
# -------------------------------
def build_email(
    *,
    to: str,
    subject: str,
    text: str,
    from_email: Optional[str] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_email or f"{settings.EMAILS_FROM_NAME} <{settings.SMTP_USER}>"
    msg["To"] = to
    msg.set_content(text)
    return msg


def order_confirmation_text(order) -> str:
    lines = [
        f"Hi {order.user.full_name},",
        "",
        f"Thanks for your order {order.order_number}.",
        "",
    ]
    for item in order.items:
        details = ", ".join(part for part in (item.size, item.color) if part)
        label = f"{item.product_name} ({details})" if details else item.product_name
        lines.append(f"  {item.quantity} x {label} @ {item.unit_price} = {item.total_price}")

    lines += [
        "",
        f"Subtotal: {order.subtotal} {order.currency}",
        f"Discount: -{order.discount_amount}",
        f"Tax: {order.tax_price}",
        f"Shipping: {order.shipping_price}",
        f"Total: {order.total_price} {order.currency}",
    ]
    return "\n".join(lines)


def order_status_text(order, old_status: str, new_status: str) -> str:
    lines = [
        f"Hi {order.user.full_name},",
        "",
        f"Your order {order.order_number} is now {new_status} (was {old_status}).",
    ]
    if new_status == "shipped" and order.tracking_number:
        carrier = f" via {order.shipping_carrier}" if order.shipping_carrier else ""
        lines.append(f"Tracking number: {order.tracking_number}{carrier}")
    if new_status == "shipped" and order.estimated_delivery:
        lines.append(f"Estimated delivery: {order.estimated_delivery:%Y-%m-%d}")
    if new_status == "cancelled" and order.cancel_reason:
        lines.append(f"Reason: {order.cancel_reason}")
    return "\n".join(lines)


# -------------------------------
# Order Confirmation
# -------------------------------
@celery_app.task(base=NotificationTask, bind=True)
def send_order_confirmation(self, order_id: int):
    from orderflow.db.session import SessionLocal
    from orderflow.models.order import Order

    db = SessionLocal()
    try:
        order = db.query(Order).filter(Order.id == order_id).first()
        if not order or not order.user:
            logger.error("order_confirmation_failed order_id=%s", order_id)
            return

        msg = build_email(
            to=order.user.email,
            subject=f"Order Received - {order.order_number}",
            text=order_confirmation_text(order),
            from_email=settings.EMAILS_FROM_ORDERS or None,
        )

        _send_email_smtp(msg)
        logger.info("order_confirmation_sent order_id=%s", order_id)
    finally:
        db.close()


# -------------------------------
# Order Status Update
# -------------------------------
@celery_app.task(base=NotificationTask, bind=True)
def send_order_status_update(self, order_id: int, old_status: str, new_status: str):
    from orderflow.db.session import SessionLocal
    from orderflow.models.order import Order

    db = SessionLocal()
    try:
        order = db.query(Order).filter(Order.id == order_id).first()
        if not order or not order.user:
            return

        from_email = settings.EMAILS_FROM_SHIPPING if new_status in ("shipped", "delivered") else settings.EMAILS_FROM_ORDERS

        msg = build_email(
            to=order.user.email,
            subject=f"Order {order.order_number} - Status Update",
            text=order_status_text(order, old_status, new_status),
            from_email=from_email or None,
        )

        _send_email_smtp(msg)
        logger.info("order_status_update_sent order_id=%s status=%s", order_id, new_status)
    finally:
        db.close()
