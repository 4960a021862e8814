"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "whatsapp_tenant_bot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # מדיה נכנסת נשמרת זמנית בלבד; ספריית ה-tenant לא נמחקת
    "purge-expired-media": {
        "task": "app.workers.tasks.purge_expired_media",
        "schedule": float(settings.FILE_PURGE_INTERVAL_SECONDS),
    },
    # הזמנות שנתקעו באמצע (למשל אחרי restart) — ביטול
    "expire-stale-orders-hourly": {
        "task": "app.workers.tasks.expire_stale_orders",
        "schedule": 3600.0,
    },
}
