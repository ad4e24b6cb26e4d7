from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "brand_pulse",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks.analysis_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_time_limit=settings.analysis_time_limit_seconds,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = {
    "sweep-stuck-reports": {
        "task": "sweep_stuck_reports",
        "schedule": crontab(minute=f"*/{settings.stuck_sweep_interval_minutes}"),
    },
}
