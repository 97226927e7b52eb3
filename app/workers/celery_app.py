"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "curator_bot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
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
    # fires due closure jobs from the Redis queue
    "dispatch-closure-jobs": {
        "task": "app.workers.tasks.dispatch_closure_jobs",
        "schedule": float(settings.CLOSURE_QUEUE_POLL_SECONDS),
    },
    # backup path: closes waiting_close rows whose job was lost
    "sweep-due-conversations": {
        "task": "app.workers.tasks.sweep_due_conversations",
        "schedule": float(settings.CLOSURE_SWEEP_INTERVAL_SECONDS),
    },
    "sweep-stale-awaiting-conversations": {
        "task": "app.workers.tasks.sweep_stale_awaiting_conversations",
        "schedule": float(settings.CLOSURE_SWEEP_INTERVAL_SECONDS),
    },
}
