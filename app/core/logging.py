"""
JSON logging. One object per line; context goes through `extra=` and the
request id of the current HTTP request is attached to every record.
"""
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from app.core.config import settings

# Set by the request middleware; copied into sync endpoints' worker threads
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter with support for extra fields."""

    # Fields to extract from log record's extra dict
    EXTRA_FIELDS = (
        "task_id", "user_id", "request_id", "path", "method", "status",
        "status_code", "latency_ms", "model", "attempt", "failure_type",
        "error", "duration_ms", "pattern", "credits", "count",
        "breaker_name", "old_state", "new_state", "stage", "progress",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name))
            for name in self.EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Enum members and datetimes show up in extras
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_handlers(formatter: logging.Formatter) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(
            RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
            )
        )
    context_filter = RequestContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
    return handlers


def configure_logging() -> None:
    """Replace root handlers with JSON handlers at settings.log_level (API and Celery workers)."""
    root = logging.getLogger()
    root.setLevel(settings.log_level)
    root.handlers = _build_handlers(JsonFormatter())
