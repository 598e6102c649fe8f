from celery import Celery
from celery.schedules import crontab
from orderflow.core.config import settings

celery_app = Celery(
    "orderflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "orderflow.tasks.notification_tasks",
        "orderflow.tasks.order_tasks",
        "orderflow.tasks.cart_tasks",
        "orderflow.tasks.payment_tasks",
    ],
)

# Celery Configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,

    task_time_limit=300,        # Hard limit (5 min)
    task_soft_time_limit=240,   # Soft limit (4 min)

    worker_prefetch_multiplier=4,
    worker_max_tasks_per_child=1000,

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,  # 1 hour
)

celery_app.conf.task_routes = {
    "orderflow.tasks.notification_tasks.*": {"queue": "notifications"},
}

celery_app.conf.beat_schedule = {
    "expire-pending-orders-every-5-min": {
        "task": "orderflow.tasks.order_tasks.expire_pending_orders",
        "schedule": crontab(minute="*/5"),
    },
    "cleanup-abandoned-carts-daily": {
        "task": "orderflow.tasks.cart_tasks.cleanup_abandoned_carts",
        "schedule": crontab(hour=3, minute=0),
    },
}
