"""
Celery beat tasks for the task lifecycle:
- expire_stuck_tasks: force-fail tasks that outlive the hard ceiling and refund them,
  refund cancelled tasks whose processor never got to it.
- dispatch_pending_tasks: re-enqueue pending tasks that were never picked up.
"""
import logging
from datetime import datetime, timedelta, timezone

from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy.exc import ProgrammingError

from app.core.celery_app import celery_app
from app.core.config import settings
from app.db.session import SessionLocal
from app.services.tasks.service import TaskService
from app.utils.metrics import tasks_failed_total, watchdog_expired_total

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "任务处理超时，已自动取消并退还点数"
DISPATCH_GRACE_SECONDS = 60


@celery_app.task(
    name="app.workers.tasks.watchdog.expire_stuck_tasks",
    time_limit=60,
    soft_time_limit=55,
)
def expire_stuck_tasks() -> dict:
    """Fail active tasks older than task_max_processing_minutes regardless of in-flight calls."""
    db = SessionLocal()
    try:
        tasks = TaskService(db)
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.task_max_processing_minutes)

        expired_count = 0
        refunded_count = 0
        for task in tasks.list_stuck(cutoff):
            task_id, user_id = task.task_id, task.user_id
            if tasks.fail(task_id, EXPIRED_MESSAGE, "timeout"):
                expired_count += 1
                watchdog_expired_total.inc()
                tasks_failed_total.labels(failure_type="timeout").inc()
            if tasks.refund_once(task_id, user_id):
                refunded_count += 1

        for task in tasks.list_unrefunded_cancelled(cutoff):
            if tasks.refund_once(task.task_id, task.user_id):
                refunded_count += 1

        if expired_count or refunded_count:
            logger.warning(
                "watchdog_expired_tasks",
                extra={"count": expired_count, "credits": refunded_count},
            )
        return {"ok": True, "expired_count": expired_count, "refunded_count": refunded_count}
    except ProgrammingError as e:
        msg = str(e.orig) if getattr(e, "orig", None) else str(e)
        db.rollback()
        if "does not exist" in msg or "UndefinedTable" in msg:
            return {"ok": True, "skipped": "table_not_found"}
        logger.exception("watchdog_error")
        return {"ok": False}
    except Exception:
        logger.exception("watchdog_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(
    name="app.workers.tasks.watchdog.dispatch_pending_tasks",
    time_limit=60,
    soft_time_limit=55,
)
def dispatch_pending_tasks() -> dict:
    """Re-enqueue recent pending tasks that still have attempts left."""
    from app.workers.tasks.generation import process_generation_task

    db = SessionLocal()
    try:
        now = datetime.now(timezone.utc)
        pending = TaskService(db).list_dispatchable(
            created_after=now - timedelta(minutes=settings.pending_dispatch_window_minutes),
            # Fresh tasks were just enqueued by the API
            created_before=now - timedelta(seconds=DISPATCH_GRACE_SECONDS),
            max_attempts=settings.pending_dispatch_max_attempts,
            limit=settings.pending_dispatch_batch_size,
        )
        dispatched = 0
        for task in pending:
            try:
                process_generation_task.delay(task.task_id)
            except BrokerError:
                logger.exception("dispatch_enqueue_failed", extra={"task_id": task.task_id})
                break
            dispatched += 1
        if dispatched:
            logger.info("pending_tasks_dispatched", extra={"count": dispatched})
        return {"ok": True, "dispatched_count": dispatched}
    except Exception:
        logger.exception("dispatch_pending_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
