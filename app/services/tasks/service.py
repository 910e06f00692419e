import logging
from datetime import datetime, timezone

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.models.generation_task import (
    ACTIVE_STATUSES,
    STAGE_PREPARING,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_PROCESSING,
    GenerationTask,
)
from app.services.credits.service import CreditService

logger = logging.getLogger(__name__)


class TaskNotFound(LookupError):
    pass


class TaskService:
    """
    Lifecycle of a generation task. Every status change is a conditional
    UPDATE on the current status, so two writers can never both win and a
    terminal task is never moved again.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        prompt: str,
        style: str | None = None,
        aspect_ratio: str | None = None,
        image_base64: str | None = None,
        image_url: str | None = None,
        task_id: str | None = None,
    ) -> GenerationTask:
        task_kwargs: dict = {
            "user_id": user_id,
            "prompt": prompt,
            "style": style,
            "aspect_ratio": aspect_ratio,
            "image_base64": image_base64,
            "image_url": image_url,
            "status": TASK_PENDING,
        }
        if task_id is not None:
            task_kwargs["task_id"] = task_id
        task = GenerationTask(**task_kwargs)
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)
        return task

    def get(self, task_id: str) -> GenerationTask | None:
        return self.db.query(GenerationTask).filter(GenerationTask.task_id == task_id).one_or_none()

    def get_for_user(self, task_id: str, user_id: str) -> GenerationTask | None:
        return (
            self.db.query(GenerationTask)
            .filter(GenerationTask.task_id == task_id, GenerationTask.user_id == user_id)
            .one_or_none()
        )

    def claim(self, task_id: str) -> bool:
        """pending -> processing. Only one worker gets True for a given task."""
        now = datetime.now(timezone.utc)
        return self._transition(
            task_id,
            (TASK_PENDING,),
            status=TASK_PROCESSING,
            processing_started_at=now,
            attempt_count=GenerationTask.attempt_count + 1,
            progress_percentage=5,
            current_stage=STAGE_PREPARING,
            stage_details=None,
        )

    def mark_deducted(self, task_id: str, amount: int) -> bool:
        """Record that `amount` credits were debited for the task; refund_once returns exactly that."""
        result = self.db.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id, GenerationTask.credits_deducted.is_(False))
            .values(credits_deducted=True, credits_cost=amount, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0

    def complete(
        self,
        task_id: str,
        result_url: str,
        model_used: str | None = None,
        gen_id: str | None = None,
    ) -> bool:
        now = datetime.now(timezone.utc)
        return self._transition(
            task_id,
            (TASK_PROCESSING,),
            status=TASK_COMPLETED,
            result_url=result_url,
            model_used=model_used,
            gen_id=gen_id,
            error_message=None,
            completed_at=now,
            progress_percentage=100,
            current_stage=TASK_COMPLETED,
        )

    def fail(self, task_id: str, message: str, failure_type: str | None = None) -> bool:
        now = datetime.now(timezone.utc)
        return self._transition(
            task_id,
            ACTIVE_STATUSES,
            status=TASK_FAILED,
            error_message=message,
            failure_type=failure_type,
            completed_at=now,
            current_stage=TASK_FAILED,
        )

    def cancel(self, task_id: str, message: str) -> bool:
        now = datetime.now(timezone.utc)
        return self._transition(
            task_id,
            ACTIVE_STATUSES,
            status=TASK_CANCELLED,
            error_message=message,
            completed_at=now,
            current_stage=TASK_CANCELLED,
        )

    def update_progress(
        self,
        task_id: str,
        percentage: int,
        stage: str,
        details: dict | None = None,
    ) -> bool:
        """Record progress of a processing task. Finished tasks keep their final stage."""
        changed = self._transition(
            task_id,
            (TASK_PROCESSING,),
            progress_percentage=max(0, min(int(percentage), 100)),
            current_stage=stage,
            stage_details=details,
        )
        if changed:
            logger.debug("task_progress", extra={"task_id": task_id, "stage": stage, "progress": percentage})
        return changed

    def is_cancelled(self, task_id: str) -> bool:
        """A task that no longer exists is treated as cancelled."""
        status = (
            self.db.query(GenerationTask.status)
            .filter(GenerationTask.task_id == task_id)
            .scalar()
        )
        return status is None or status == TASK_CANCELLED

    def refund_once(self, task_id: str, user_id: str) -> bool:
        """
        Return the task's credits at most once. The flag flip and the balance
        change share a transaction; only the caller that flips the flag credits.
        """
        result = self.db.execute(
            update(GenerationTask)
            .where(
                GenerationTask.task_id == task_id,
                GenerationTask.credits_deducted.is_(True),
                GenerationTask.credits_refunded.is_(False),
                GenerationTask.status.in_((TASK_FAILED, TASK_CANCELLED)),
            )
            .values(credits_refunded=True, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            return False
        try:
            amount = (
                self.db.query(GenerationTask.credits_cost)
                .filter(GenerationTask.task_id == task_id)
                .scalar()
            )
            balance = CreditService(self.db).credit(user_id, amount, task_id=task_id) if amount else None
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "credit_refunded",
            extra={"task_id": task_id, "user_id": user_id, "credits": balance},
        )
        return True

    def list_stuck(self, cutoff: datetime, limit: int = 100) -> list[GenerationTask]:
        """Active tasks whose processing (or creation, if never claimed) started before cutoff."""
        return (
            self.db.query(GenerationTask)
            .filter(
                GenerationTask.status.in_(ACTIVE_STATUSES),
                or_(
                    GenerationTask.processing_started_at < cutoff,
                    (GenerationTask.processing_started_at.is_(None) & (GenerationTask.created_at < cutoff)),
                ),
            )
            .limit(limit)
            .all()
        )

    def list_unrefunded_cancelled(self, cutoff: datetime, limit: int = 100) -> list[GenerationTask]:
        return (
            self.db.query(GenerationTask)
            .filter(
                GenerationTask.status == TASK_CANCELLED,
                GenerationTask.credits_deducted.is_(True),
                GenerationTask.credits_refunded.is_(False),
                GenerationTask.updated_at < cutoff,
            )
            .limit(limit)
            .all()
        )

    def list_dispatchable(
        self,
        created_after: datetime,
        created_before: datetime,
        max_attempts: int,
        limit: int,
    ) -> list[GenerationTask]:
        return (
            self.db.query(GenerationTask)
            .filter(
                GenerationTask.status == TASK_PENDING,
                GenerationTask.attempt_count < max_attempts,
                GenerationTask.created_at >= created_after,
                GenerationTask.created_at < created_before,
            )
            .order_by(GenerationTask.created_at.asc())
            .limit(limit)
            .all()
        )

    def _transition(self, task_id: str, from_statuses: tuple[str, ...], **values) -> bool:
        values.setdefault("updated_at", datetime.now(timezone.utc))
        result = self.db.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id, GenerationTask.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        changed = result.rowcount > 0
        if changed and "status" in values:
            logger.info("task_status_changed", extra={"task_id": task_id, "status": values["status"]})
        return changed
