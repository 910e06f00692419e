"""
Task processor: runs one generation task from claim to a terminal status.

    pending -> processing -> completed | failed | cancelled

Cancellation is cooperative. The task row is checked before the upstream
call, every `cancel_poll_interval_seconds` while the call is in flight,
after the response arrives and before each extraction retry. A call that is
abandoned keeps running in its worker thread until the upstream returns or
times out; its result is discarded.

Extraction retries re-parse the same reply text, so they cannot find a URL the
first pass missed. They are kept as paced cancellation checkpoints between the
reply and the loose any-URL fallback; set `extraction_retry_delays` empty to
go straight to the fallback.

Progress (`progress_percentage`, `current_stage`, `stage_details`) is written
on the task row at each step so task-status polling can show it.

Every failed or cancelled path goes through TaskService.refund_once, so a
deducted credit is returned exactly once no matter how many paths race.
"""
import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings as app_settings
from app.models.generation_task import (
    STAGE_EXTRACTING_IMAGE,
    STAGE_FINALIZING,
    STAGE_GENERATING,
    STAGE_SENDING_REQUEST,
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_FAILED,
)
from app.services.credits.service import CreditBalanceNotFound, CreditService, InsufficientCredits
from app.services.generation.messages import build_suggestion, map_user_error
from app.services.history.service import HistoryService
from app.services.image_generation import (
    ExtractionResult,
    FailureType,
    GenerationAborted,
    ImageGenerationError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageProviderFactory,
    detect_soft_refusal,
    extract_any_url,
    extract_image_url,
    generate_with_retry,
)
from app.services.tasks.service import TaskNotFound, TaskService
from app.utils.metrics import (
    active_tasks,
    credits_rejected_total,
    extraction_matches_total,
    task_duration_seconds,
    tasks_cancelled_total,
    tasks_completed_total,
    tasks_failed_total,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "任务已被取消"

# Upstream calls run here so the calling thread can keep polling for cancellation
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="generation-call")


class TaskCancelled(GenerationAborted):
    def __init__(self, task_id: str, stage: str):
        super().__init__(f"task {task_id} cancelled at {stage}")
        self.task_id = task_id
        self.stage = stage


@dataclass
class ProcessOutcome:
    task_id: str
    status: str
    image_url: str | None = None
    error: str | None = None
    suggestion: str | None = None
    failure_type: str | None = None
    model_used: str | None = None
    duration: float = 0.0
    refunded: bool = False
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.status == TASK_COMPLETED


@dataclass(frozen=True)
class _TaskSnapshot:
    """Immutable copy of the fields the processor needs; the ORM row is re-read for status."""
    task_id: str
    user_id: str
    prompt: str
    style: str | None
    aspect_ratio: str | None
    image_base64: str | None
    image_url: str | None


class TaskProcessor:
    def __init__(
        self,
        db: Session,
        provider: ImageGenerationProvider | None = None,
        settings: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.settings = settings or app_settings
        self.provider = provider
        self.tasks = TaskService(db)
        self.credits = CreditService(db)
        self.history = HistoryService(db, max_entries=self.settings.history_max_entries)
        self._sleep = sleep

    def process(self, task_id: str) -> ProcessOutcome:
        """Claim and run the task. Never raises for generation problems; TaskNotFound for unknown ids."""
        started = time.monotonic()
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        snapshot = _TaskSnapshot(
            task_id=task.task_id,
            user_id=task.user_id,
            prompt=task.prompt or "",
            style=task.style,
            aspect_ratio=task.aspect_ratio,
            image_base64=task.image_base64,
            image_url=task.image_url,
        )

        if not self.tasks.claim(task_id):
            current = self.tasks.get(task_id)
            logger.info("task_claim_skipped", extra={"task_id": task_id, "status": current.status if current else None})
            return ProcessOutcome(
                task_id=task_id,
                status=current.status if current else TASK_CANCELLED,
                image_url=current.result_url if current else None,
                error=current.error_message if current else None,
                skipped=True,
            )

        logger.info("task_claimed", extra={"task_id": task_id, "user_id": snapshot.user_id})
        active_tasks.inc()
        try:
            return self._run(snapshot, started)
        except Exception as e:
            logger.exception("task_processing_error", extra={"task_id": task_id, "error": type(e).__name__})
            self.db.rollback()
            return self._fail(snapshot, map_user_error(FailureType.INTERNAL), FailureType.INTERNAL, started)
        finally:
            active_tasks.dec()

    # ------------------------------------------------------------------ steps

    def _run(self, task: _TaskSnapshot, started: float) -> ProcessOutcome:
        cost = self.settings.generation_cost_credits
        try:
            self.credits.debit(task.user_id, cost, task_id=task.task_id)
        except (InsufficientCredits, CreditBalanceNotFound):
            self.db.rollback()
            credits_rejected_total.inc()
            return self._fail(
                task,
                map_user_error(FailureType.INSUFFICIENT_CREDITS),
                FailureType.INSUFFICIENT_CREDITS,
                started,
            )
        # Commits the debit together with the flag
        self.tasks.mark_deducted(task.task_id, cost)
        logger.info("credit_debited", extra={"task_id": task.task_id, "user_id": task.user_id, "credits": cost})

        try:
            self._checkpoint(task.task_id, "before_request")
            provider = self.provider or ImageProviderFactory.create_from_settings(self.settings)
            request = ImageGenerationRequest(
                prompt=task.prompt,
                style=task.style,
                aspect_ratio=task.aspect_ratio,
                image_base64=task.image_base64,
                image_url=task.image_url,
                max_tokens=self.settings.generation_max_tokens,
                stream=self.settings.generation_stream,
            )
            self._progress(task.task_id, 20, STAGE_SENDING_REQUEST, provider=provider.name)
            response = generate_with_retry(
                provider,
                request,
                self.settings,
                invoke=self._cancellable_invoke(task.task_id),
            )
            self._checkpoint(task.task_id, "after_response")
            self._progress(
                task.task_id, 80, STAGE_EXTRACTING_IMAGE, model=response.model, gen_id=response.generation_id
            )

            extraction, refusal = self._resolve_image_url(task.task_id, response.text)
            if refusal:
                logger.warning(
                    "generation_soft_refusal",
                    extra={"task_id": task.task_id, "model": response.model, "error": refusal},
                )
                return self._fail(
                    task,
                    map_user_error(FailureType.SOFT_REFUSAL),
                    FailureType.SOFT_REFUSAL,
                    started,
                    model_used=response.model,
                )
            if extraction is None:
                return self._fail(
                    task,
                    map_user_error(FailureType.NO_IMAGE_URL),
                    FailureType.NO_IMAGE_URL,
                    started,
                    model_used=response.model,
                )
            self._progress(task.task_id, 95, STAGE_FINALIZING, pattern=extraction.pattern)
            return self._complete(task, extraction, response, started)
        except TaskCancelled as e:
            logger.info("task_cancel_observed", extra={"task_id": task.task_id, "status": e.stage})
            return self._cancelled(task, started)
        except ImageGenerationError as e:
            failure_type = FailureType(e.detail.get("failure_type", FailureType.INTERNAL.value))
            logger.warning(
                "generation_failed",
                extra={
                    "task_id": task.task_id,
                    "failure_type": failure_type.value,
                    "attempt": e.detail.get("attempts"),
                    "model": e.detail.get("model"),
                    "error": str(e),
                },
            )
            return self._fail(
                task,
                map_user_error(failure_type, str(e)),
                failure_type,
                started,
                model_used=e.detail.get("model"),
            )

    def _cancellable_invoke(self, task_id: str):
        poll_interval = max(self.settings.cancel_poll_interval_seconds, 0.05)

        def invoke(provider: ImageGenerationProvider, request: ImageGenerationRequest) -> ImageGenerationResponse:
            self._checkpoint(task_id, "before_request")
            self._progress(task_id, 40, STAGE_GENERATING, model=request.model)
            future = _executor.submit(contextvars.copy_context().run, provider.generate, request)
            while True:
                try:
                    return future.result(timeout=poll_interval)
                except FuturesTimeout:
                    if self.tasks.is_cancelled(task_id):
                        future.cancel()
                        raise TaskCancelled(task_id, "polling")

        return invoke

    def _progress(self, task_id: str, percentage: int, stage: str, **details: Any) -> None:
        self.tasks.update_progress(
            task_id, percentage, stage, {k: v for k, v in details.items() if v is not None} or None
        )

    def _checkpoint(self, task_id: str, stage: str) -> None:
        if self.tasks.is_cancelled(task_id):
            raise TaskCancelled(task_id, stage)

    def _resolve_image_url(self, task_id: str, text: str) -> tuple[ExtractionResult | None, str | None]:
        """
        Returns (extraction, refusal_phrase). A refusal short-circuits the
        extraction retries; otherwise retries run with delays, then the loose fallback.
        """
        result = extract_image_url(text)
        if result is None:
            refusal = detect_soft_refusal(text)
            if refusal:
                return None, refusal
            for attempt, delay in enumerate(self.settings.extraction_retry_delays_list, start=1):
                logger.info(
                    "extraction_retry_scheduled",
                    extra={"task_id": task_id, "attempt": attempt, "duration_ms": int(delay * 1000)},
                )
                self._sleep(delay)
                self._checkpoint(task_id, "extraction_retry")
                result = extract_image_url(text)
                if result is not None:
                    break
        if result is None:
            result = extract_any_url(text)
        if result is not None:
            extraction_matches_total.labels(pattern=result.pattern).inc()
            logger.info("image_url_extracted", extra={"task_id": task_id, "pattern": result.pattern})
        else:
            extraction_matches_total.labels(pattern="none").inc()
        return result, None

    # -------------------------------------------------------------- outcomes

    def _complete(
        self,
        task: _TaskSnapshot,
        extraction: ExtractionResult,
        response: ImageGenerationResponse,
        started: float,
    ) -> ProcessOutcome:
        if not self.tasks.complete(task.task_id, extraction.url, response.model, response.generation_id):
            # Cancelled or expired while the call was running
            current = self.tasks.get(task.task_id)
            if current is None or current.status == TASK_CANCELLED:
                return self._cancelled(task, started)
            refunded = self.tasks.refund_once(task.task_id, task.user_id)
            return ProcessOutcome(
                task_id=task.task_id,
                status=current.status,
                error=current.error_message,
                failure_type=current.failure_type,
                duration=self._elapsed(started),
                refunded=refunded,
            )

        try:
            self.history.append(
                user_id=task.user_id,
                task_id=task.task_id,
                image_url=extraction.url,
                prompt=task.prompt,
                style=task.style,
                aspect_ratio=task.aspect_ratio,
                model_used=response.model,
                generation_settings={
                    "style": task.style,
                    "size": response.raw_response_sanitized.get("size"),
                    "provider": response.provider,
                },
            )
        except SQLAlchemyError:
            # The image exists and the task is completed; only the history row is lost
            self.db.rollback()
            logger.exception("history_append_failed", extra={"task_id": task.task_id})

        duration = self._elapsed(started)
        tasks_completed_total.inc()
        task_duration_seconds.labels(status=TASK_COMPLETED).observe(duration)
        logger.info(
            "task_completed",
            extra={"task_id": task.task_id, "model": response.model, "duration_ms": int(duration * 1000)},
        )
        return ProcessOutcome(
            task_id=task.task_id,
            status=TASK_COMPLETED,
            image_url=extraction.url,
            model_used=response.model,
            duration=duration,
        )

    def _fail(
        self,
        task: _TaskSnapshot,
        message: str,
        failure_type: FailureType,
        started: float,
        model_used: str | None = None,
    ) -> ProcessOutcome:
        self.tasks.fail(task.task_id, message, failure_type.value)
        refunded = self.tasks.refund_once(task.task_id, task.user_id)
        current = self.tasks.get(task.task_id)
        status = current.status if current else TASK_FAILED
        duration = self._elapsed(started)
        if status == TASK_CANCELLED:
            return self._cancelled(task, started, refunded=refunded)
        tasks_failed_total.labels(failure_type=failure_type.value).inc()
        task_duration_seconds.labels(status=TASK_FAILED).observe(duration)
        logger.warning(
            "task_failed",
            extra={
                "task_id": task.task_id,
                "user_id": task.user_id,
                "failure_type": failure_type.value,
                "error": message,
                "duration_ms": int(duration * 1000),
            },
        )
        return ProcessOutcome(
            task_id=task.task_id,
            status=status,
            error=current.error_message if current else message,
            suggestion=build_suggestion(task.style, task.prompt, failure_type),
            failure_type=failure_type.value,
            model_used=model_used,
            duration=duration,
            refunded=refunded,
        )

    def _cancelled(self, task: _TaskSnapshot, started: float, refunded: bool = False) -> ProcessOutcome:
        self.tasks.cancel(task.task_id, CANCELLED_MESSAGE)
        refunded = self.tasks.refund_once(task.task_id, task.user_id) or refunded
        duration = self._elapsed(started)
        tasks_cancelled_total.labels(source="processor").inc()
        task_duration_seconds.labels(status=TASK_CANCELLED).observe(duration)
        logger.info("task_cancelled", extra={"task_id": task.task_id, "user_id": task.user_id})
        return ProcessOutcome(
            task_id=task.task_id,
            status=TASK_CANCELLED,
            error=CANCELLED_MESSAGE,
            duration=duration,
            refunded=refunded,
        )

    @staticmethod
    def _elapsed(started: float) -> float:
        return round(time.monotonic() - started, 2)
