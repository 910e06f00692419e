"""
Generation API: synchronous generation, task creation/status, internal
process trigger, cancellation.
"""
import hmac
import logging
import time

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.models.generation_task import TASK_CANCELLED, TASK_PENDING
from app.schemas.generation import GenerateImageRequest, TaskIdRequest, TaskOut
from app.services.auth.jwt import get_current_user
from app.services.credits.service import CreditService
from app.services.generation.processor import TaskProcessor
from app.services.image_generation import FailureType
from app.services.inflight import GenerationInFlight, acquire_generation_slot
from app.services.tasks.service import TaskService
from app.utils.metrics import credits_rejected_total, tasks_cancelled_total, tasks_created_total
from app.workers.tasks.generation import process_generation_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generate-image", tags=["generation"])

USER_CANCEL_MESSAGE = "用户主动取消任务"
NOTIFY_CANCEL_MESSAGE = "任务已被系统通知取消"


# ---------- validation helpers ----------

def _split_image(image: str | None) -> tuple[str | None, str | None]:
    """Returns (image_base64, image_url)."""
    if not image or not image.strip():
        return None, None
    value = image.strip()
    if value.startswith(("http://", "https://")):
        return None, value
    return value, None


def _estimated_bytes(image_base64: str) -> int:
    data = image_base64.split(",", 1)[1] if image_base64.startswith("data:") else image_base64
    return len(data) * 3 // 4


def validate_generation_request(body: GenerateImageRequest) -> tuple[str, str | None, str | None]:
    """Returns (prompt, image_base64, image_url) or raises 400."""
    prompt = (body.prompt or "").strip()
    style = (body.style or "").strip()
    image_base64, image_url = _split_image(body.image)
    if not prompt and not ((image_base64 or image_url) and style):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="提示词不能为空")
    if image_base64 and _estimated_bytes(image_base64) > settings.max_image_bytes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="图片太大，请使用较小的图片或降低图片质量后重试",
        )
    return prompt, image_base64, image_url


def require_credits(db: Session, user_id: str) -> int:
    """Lazily provision the balance; 400 before any task exists when it cannot cover one generation."""
    balance = CreditService(db).ensure_balance(user_id)
    if balance < settings.generation_cost_credits:
        credits_rejected_total.inc()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="点数不足，无法生成图片")
    return balance


def require_task_secret(
    authorization: str | None = Header(default=None),
    x_task_secret: str | None = Header(default=None),
) -> None:
    provided = x_task_secret
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[7:]
    if not provided or not hmac.compare_digest(provided, settings.task_process_secret_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无效的密钥")


def require_bearer_secret(authorization: str | None = Header(default=None)) -> None:
    """Cancel notifications: missing bearer is 401, a wrong one 403."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少授权令牌")
    if not hmac.compare_digest(authorization[7:], settings.task_process_secret_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无效的授权令牌")


def _require_task_id(task_id: str | None) -> str:
    if not task_id or not task_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="缺少任务ID参数")
    return task_id.strip()


# ---------- user endpoints ----------

@router.post("")
def generate_image(
    body: GenerateImageRequest,
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Generate and wait for the result. One request in flight at a time."""
    started = time.monotonic()
    user_id = current_user["user_id"]
    prompt, image_base64, image_url = validate_generation_request(body)

    try:
        with acquire_generation_slot():
            require_credits(db, user_id)
            task = TaskService(db).create(
                user_id=user_id,
                prompt=prompt,
                style=body.style,
                aspect_ratio=body.aspect_ratio,
                image_base64=image_base64,
                image_url=image_url,
            )
            tasks_created_total.labels(mode="sync").inc()
            outcome = TaskProcessor(db).process(task.task_id)
    except GenerationInFlight:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="系统正在处理另一个请求，请稍后再试",
        )

    duration = round(time.monotonic() - started, 2)
    if outcome.success:
        return {
            "success": True,
            "imageUrl": outcome.image_url,
            "taskId": outcome.task_id,
            "message": "图片生成成功",
            "duration": duration,
        }

    payload = {
        "success": False,
        "error": outcome.error,
        "taskId": outcome.task_id,
        "duration": duration,
    }
    if outcome.suggestion:
        payload["suggestion"] = outcome.suggestion
    if outcome.status == TASK_CANCELLED:
        return JSONResponse(status_code=status.HTTP_200_OK, content=payload)
    if outcome.failure_type == FailureType.INSUFFICIENT_CREDITS.value:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)


@router.post("/create")
def create_generation_task(
    body: GenerateImageRequest,
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Queue a task; the client polls task-status."""
    user_id = current_user["user_id"]
    prompt, image_base64, image_url = validate_generation_request(body)
    require_credits(db, user_id)

    task = TaskService(db).create(
        user_id=user_id,
        prompt=prompt,
        style=body.style,
        aspect_ratio=body.aspect_ratio,
        image_base64=image_base64,
        image_url=image_url,
    )
    tasks_created_total.labels(mode="async").inc()
    try:
        process_generation_task.delay(task.task_id)
    except BrokerError:
        # Stays pending; the dispatcher picks it up
        logger.exception("task_enqueue_failed", extra={"task_id": task.task_id, "user_id": user_id})
    return {"success": True, "taskId": task.task_id, "message": "任务创建成功，正在处理中"}


@router.get("/task-status")
def get_task_status(
    task_id: str | None = Query(default=None, alias="taskId"),
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    task_id = _require_task_id(task_id)
    task = TaskService(db).get(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="任务不存在")
    if task.user_id != current_user["user_id"]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="您没有权限查看此任务")
    return {"success": True, "task": TaskOut.model_validate(task).model_dump(mode="json")}


@router.post("/cancel")
def cancel_task(
    body: TaskIdRequest,
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """User cancels their own pending or processing task; a deducted credit is returned."""
    task_id = _require_task_id(body.task_id)
    user_id = current_user["user_id"]
    tasks = TaskService(db)
    task = tasks.get_for_user(task_id, user_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="任务不存在或无权限操作")
    if task.is_terminal or not tasks.cancel(task_id, USER_CANCEL_MESSAGE):
        current = tasks.get(task_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"无法取消{current.status if current else task.status}状态的任务",
        )
    refunded = tasks.refund_once(task_id, user_id)
    tasks_cancelled_total.labels(source="user").inc()
    logger.info("task_cancelled_by_user", extra={"task_id": task_id, "user_id": user_id})
    return {"success": True, "message": "任务已取消", "creditsRefunded": refunded}


# ---------- internal endpoints ----------

@router.post("/process", dependencies=[Depends(require_task_secret)])
def trigger_processing(body: TaskIdRequest, db: Session = Depends(get_db)):
    """Start asynchronous processing of a queued task and acknowledge immediately."""
    task_id = _require_task_id(body.task_id)
    task = TaskService(db).get(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="任务不存在")
    if task.status != TASK_PENDING:
        return {
            "success": True,
            "taskId": task_id,
            "status": task.status,
            "message": f"任务状态为{task.status}，无需处理",
        }
    try:
        process_generation_task.delay(task_id)
    except BrokerError:
        logger.exception("task_enqueue_failed", extra={"task_id": task_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="任务入队失败")
    return {"success": True, "taskId": task_id, "status": TASK_PENDING, "message": "任务已开始处理"}


@router.post("/notify-cancel", dependencies=[Depends(require_bearer_secret)])
def notify_cancel(body: TaskIdRequest, db: Session = Depends(get_db)):
    """Mark a task cancelled; the processor observes it at its next checkpoint and refunds."""
    task_id = _require_task_id(body.task_id)
    tasks = TaskService(db)
    task = tasks.get(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="任务不存在")
    if not task.is_terminal and tasks.cancel(task_id, NOTIFY_CANCEL_MESSAGE):
        tasks_cancelled_total.labels(source="notify").inc()
        logger.info("task_cancel_notified", extra={"task_id": task_id})
        return {"success": True, "taskId": task_id, "status": TASK_CANCELLED}
    current = tasks.get(task_id)
    return {
        "success": True,
        "taskId": task_id,
        "status": current.status,
        "message": "任务已结束，无需取消",
    }


@router.get("/notify-cancel")
def get_cancel_status(
    task_id: str | None = Query(default=None, alias="taskId"),
    db: Session = Depends(get_db),
):
    task_id = _require_task_id(task_id)
    task = TaskService(db).get(task_id)
    if task is None:
        return {
            "success": True,
            "isCancelled": True,
            "inDatabase": False,
            "status": None,
            "reason": "task_not_exist",
        }
    return {
        "success": True,
        "isCancelled": task.status == TASK_CANCELLED,
        "inDatabase": True,
        "status": task.status,
    }
