import logging

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.generation_history import GenerationHistory

logger = logging.getLogger(__name__)


class HistoryService:
    def __init__(self, db: Session, max_entries: int | None = None):
        self.db = db
        self.max_entries = max_entries if max_entries is not None else settings.history_max_entries

    def append(
        self,
        user_id: str,
        image_url: str,
        prompt: str,
        style: str | None = None,
        aspect_ratio: str | None = None,
        model_used: str | None = None,
        task_id: str | None = None,
        generation_settings: dict | None = None,
    ) -> GenerationHistory:
        """Insert a history entry and evict the user's oldest entries beyond the cap."""
        entry = GenerationHistory(
            user_id=user_id,
            task_id=task_id,
            image_url=image_url,
            prompt=prompt,
            style=style,
            aspect_ratio=aspect_ratio,
            model_used=model_used,
            generation_settings=generation_settings or {},
        )
        self.db.add(entry)
        self.db.flush()
        pruned = self.prune(user_id)
        self.db.commit()
        self.db.refresh(entry)
        if pruned:
            logger.info("history_pruned", extra={"user_id": user_id, "count": pruned})
        return entry

    def prune(self, user_id: str) -> int:
        """Delete entries past the newest `max_entries` (FIFO by created_at). Caller commits."""
        overflow = (
            self.db.query(GenerationHistory.id)
            .filter(GenerationHistory.user_id == user_id)
            .order_by(GenerationHistory.created_at.desc(), GenerationHistory.id.desc())
            .offset(self.max_entries)
            .all()
        )
        ids = [row.id for row in overflow]
        if not ids:
            return 0
        self.db.query(GenerationHistory).filter(GenerationHistory.id.in_(ids)).delete(
            synchronize_session=False
        )
        return len(ids)

    def list_for_user(self, user_id: str, limit: int | None = None) -> list[GenerationHistory]:
        limit = min(limit or self.max_entries, self.max_entries)
        return (
            self.db.query(GenerationHistory)
            .filter(GenerationHistory.user_id == user_id)
            .order_by(GenerationHistory.created_at.desc(), GenerationHistory.id.desc())
            .limit(limit)
            .all()
        )

    def count(self, user_id: str) -> int:
        return self.db.query(GenerationHistory).filter(GenerationHistory.user_id == user_id).count()

    def delete(self, user_id: str, entry_id: str) -> bool:
        deleted = (
            self.db.query(GenerationHistory)
            .filter(GenerationHistory.id == entry_id, GenerationHistory.user_id == user_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0
