"""
Celery Application Configuration
"""
from celery import Celery

from taxibot.core.config import settings

celery_app = Celery(
    "taxibot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["taxibot.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/Sao_Paulo",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "expire-idle-conversations-every-5-minutes": {
        "task": "taxibot.workers.tasks.expire_idle_conversations",
        "schedule": 300.0,
    },
    # rede de segurança para callbacks perdidos da Machine Global
    "refresh-active-rides-every-2-minutes": {
        "task": "taxibot.workers.tasks.refresh_active_rides",
        "schedule": 120.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "taxibot.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,
    },
}
