from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, String, Text

from app.db.base import Base


class GenerationHistory(Base):
    __tablename__ = "generation_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    task_id = Column(String, nullable=True, index=True)
    prompt = Column(Text, nullable=False, default="")
    image_url = Column(String, nullable=False)
    style = Column(String, nullable=True)
    aspect_ratio = Column(String, nullable=True)
    model_used = Column(String, nullable=True)
    generation_settings = Column(JSON, nullable=False, default=dict)  # style, size, provider
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
