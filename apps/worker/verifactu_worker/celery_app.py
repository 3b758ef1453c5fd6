"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from verifactu_api.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "verifactu_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    beat_schedule={
        "submission-tick": {
            "task": "verifactu_worker.tasks.run_submission_tick",
            "schedule": float(settings.worker_tick_seconds),
            # A tick that could not start before the next one is pointless
            "options": {"expires": float(settings.worker_tick_seconds)},
        },
        "certificate-monitor": {
            "task": "verifactu_worker.tasks.run_certificate_monitor",
            "schedule": crontab(hour=settings.certificate_check_hour_utc, minute=0),
        },
    },
)

# Import tasks to register them with Celery
# This must be done after celery_app is created
from verifactu_worker import tasks  # noqa: F401, E402
