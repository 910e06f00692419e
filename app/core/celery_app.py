"""
Celery application: broker and result backend from settings.
Tasks are in app.workers.tasks (generation, watchdog).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from app.core.config import settings
from app.core.logging import configure_logging

celery_app = Celery(
    "app",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.generation",
        "app.workers.tasks.watchdog",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    # Upstream timeout plus retry and extraction delays stays well below this
    task_time_limit=settings.task_max_processing_minutes * 60 + 60,
    result_expires=86400,
    beat_schedule={
        "expire-stuck-tasks": {
            "task": "app.workers.tasks.watchdog.expire_stuck_tasks",
            "schedule": crontab(minute="*"),
        },
        "dispatch-pending-tasks": {
            "task": "app.workers.tasks.watchdog.dispatch_pending_tasks",
            "schedule": crontab(minute="*/2"),
        },
    },
)

celery_app.conf.task_routes = {
    "app.workers.tasks.generation.process_generation_task": {"queue": "generation"},
}


@worker_process_init.connect
def _init_worker_logging(**_kwargs) -> None:
    configure_logging()
