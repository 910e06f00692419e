from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class GenerateImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    # Base64 (optionally a data: URL) or an http(s) link
    image: str | None = None
    style: str | None = None
    aspect_ratio: str | None = Field(default=None, alias="aspectRatio")


class TaskIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str | None = Field(default=None, alias="taskId")


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: str
    user_id: str
    status: str
    prompt: str
    style: str | None
    aspect_ratio: str | None
    result_url: str | None
    error_message: str | None
    failure_type: str | None
    credits_deducted: bool
    credits_refunded: bool
    attempt_count: int
    model_used: str | None
    gen_id: str | None
    progress_percentage: int
    current_stage: str
    stage_details: dict | None
    processing_started_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    task_id: str | None
    prompt: str
    image_url: str
    style: str | None
    aspect_ratio: str | None
    model_used: str | None
    created_at: datetime


class CreditLedgerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: str
    operation: str
    amount: int
    created_at: datetime
