"""
Celery task: run one queued generation task through the TaskProcessor.
Enqueued by POST /api/generate-image/create, the internal process trigger and
the pending-task dispatcher.
"""
import logging

from app.core.celery_app import celery_app
from app.core.config import settings
from app.db.session import session_scope
from app.services.generation.processor import TaskProcessor
from app.services.tasks.service import TaskNotFound

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.generation.process_generation_task",
    # The watchdog owns the hard ceiling; this only stops a wedged worker
    soft_time_limit=settings.task_max_processing_minutes * 60,
    time_limit=settings.task_max_processing_minutes * 60 + 30,
    acks_late=True,
)
def process_generation_task(task_id: str) -> dict:
    with session_scope() as db:
        try:
            outcome = TaskProcessor(db).process(task_id)
        except TaskNotFound:
            logger.warning("task_not_found", extra={"task_id": task_id})
            return {"ok": False, "task_id": task_id, "error": "task_not_found"}
    return {
        "ok": True,
        "task_id": task_id,
        "status": outcome.status,
        "skipped": outcome.skipped,
        "refunded": outcome.refunded,
    }
