from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from app.db.base import Base


TASK_PENDING = "pending"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TASK_CANCELLED = "cancelled"

ACTIVE_STATUSES = (TASK_PENDING, TASK_PROCESSING)
TERMINAL_STATUSES = (TASK_COMPLETED, TASK_FAILED, TASK_CANCELLED)

# Progress stages, in order; a terminal task carries its status as the stage
STAGE_QUEUED = "queued"
STAGE_PREPARING = "preparing"
STAGE_SENDING_REQUEST = "sending_request"
STAGE_GENERATING = "generating"
STAGE_EXTRACTING_IMAGE = "extracting_image"
STAGE_FINALIZING = "finalizing"


def new_task_id() -> str:
    return f"task_{uuid4()}"


class GenerationTask(Base):
    __tablename__ = "generation_tasks"

    task_id = Column(String, primary_key=True, default=new_task_id)
    user_id = Column(String, nullable=False, index=True)
    prompt = Column(Text, nullable=False, default="")
    style = Column(String, nullable=True)
    aspect_ratio = Column(String, nullable=True)  # e.g. 16:9, 3:4
    image_base64 = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default=TASK_PENDING, index=True)
    result_url = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    failure_type = Column(String, nullable=True)
    credits_deducted = Column(Boolean, nullable=False, default=False)
    credits_refunded = Column(Boolean, nullable=False, default=False)
    # Amount actually debited; refunds return exactly this
    credits_cost = Column(Integer, nullable=False, default=0)
    attempt_count = Column(Integer, nullable=False, default=0)
    model_used = Column(String, nullable=True)
    gen_id = Column(String, nullable=True)  # upstream completion id of the reply that produced the image
    progress_percentage = Column(Integer, nullable=False, default=0)
    current_stage = Column(String(50), nullable=False, default=STAGE_QUEUED, index=True)
    stage_details = Column(JSON, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
