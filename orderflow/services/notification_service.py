import structlog

from orderflow.core.config import settings

logger = structlog.get_logger()


def notify_order_confirmation(order_id: int) -> None:
    """Queue the confirmation email. Never fails the caller."""
    if not settings.NOTIFICATIONS_ENABLED:
        return
    try:
        from orderflow.tasks.notification_tasks import send_order_confirmation

        send_order_confirmation.delay(order_id)
    except Exception:
        logger.exception("order_confirmation_enqueue_failed", order_id=order_id)


def notify_status_change(order_id: int, old_status: str, new_status: str) -> None:
    if not settings.NOTIFICATIONS_ENABLED:
        return
    try:
        from orderflow.tasks.notification_tasks import send_order_status_update

        send_order_status_update.delay(order_id, old_status, new_status)
    except Exception:
        logger.exception(
            "order_status_notification_enqueue_failed",
            order_id=order_id,
            new_status=new_status,
        )
