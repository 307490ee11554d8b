from celery import Celery
from celery.schedules import crontab

from homebid.config import settings

app = Celery(
    "homebid",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "homebid.tasks.dispute_tasks.*": {"queue": "disputes"},
        "homebid.tasks.escrow_tasks.*": {"queue": "escrow"},
        "homebid.tasks.notification_tasks.*": {"queue": "notifications"},
    },
    beat_schedule={
        "escalate-overdue-disputes": {
            "task": "homebid.tasks.dispute_tasks.escalate_overdue_disputes",
            "schedule": crontab(minute=0),  # every hour
        },
        "expire-rework-holds": {
            "task": "homebid.tasks.escrow_tasks.expire_rework_holds",
            "schedule": crontab(minute=30),  # every hour, offset from escalations
        },
    },
)

app.autodiscover_tasks(
    [
        "homebid.tasks.dispute_tasks",
        "homebid.tasks.escrow_tasks",
        "homebid.tasks.notification_tasks",
    ]
)
