"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockwise",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.receiving_alerts"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.receiving_alerts.*": {"queue": "alerts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Advisory only: alerts are recomputed on every read, this job just
    # reports the current overdue picture to the logs.
    beat_schedule={
        "refresh-overdue-alerts-hourly": {
            "task": "workers.receiving_alerts.refresh_overdue_alerts",
            "schedule": crontab(minute=0),
            "options": {"queue": "alerts"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
