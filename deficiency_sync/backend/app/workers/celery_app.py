# backend/app/workers/celery_app.py
from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging

from ..config import settings
from ..logging_config import configure_logging

BROKER = settings.celery_broker_url or "redis://localhost:6379/0"
BACKEND = settings.celery_result_backend or "redis://localhost:6379/1"

celery_app = Celery(
    "deficiency_sync",
    broker=BROKER,
    backend=BACKEND,
    include=["app.workers.trello_tasks", "app.workers.overdue_tasks"],
)

# Handlers are idempotent and the bus is at-least-once: ack only after the
# task finishes so a lost worker means redelivery, not a dropped event.
celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    timezone="UTC",
)

celery_app.conf.task_routes = {
    "app.workers.trello_tasks.*": {"queue": "trello"},
}

celery_app.conf.beat_schedule = {
    "sync-overdue-deficiencies": {
        "task": "app.workers.overdue_tasks.sync_overdue_task",
        "schedule": float(max(60, settings.overdue_sweep_interval_seconds)),
    },
}


@setup_logging.connect
def _configure_worker_logging(**_: object) -> None:
    configure_logging()
