"""
Celery configuration for scan execution.

Only used when REDIS_URL is set; without it the API runs scans inline.
"""
from celery import Celery
from celery.schedules import crontab
from mentioned.config import settings
from mentioned.logging_conf import configure_logging

configure_logging()

app = Celery(
    "mentioned",
    broker=settings.REDIS_URL or "memory://",
    backend=settings.REDIS_URL or "cache+memory://",
    include=["mentioned.queue.tasks"],
)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_default_queue="scan",
    # a scan is acknowledged only after it finished, so a lost worker means redelivery
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    task_soft_time_limit=int(settings.SCAN_TIMEOUT_SECS) + 60,
    task_time_limit=int(settings.SCAN_TIMEOUT_SECS) + 120,
    result_expires=24 * 3600,
)

app.conf.beat_schedule = {
    "run-recurring-scans": {
        "task": "mentioned.queue.tasks.run_recurring_scans",
        "schedule": crontab(minute=f"*/{settings.RECURRING_CHECK_MINUTES}"),
    },
}
