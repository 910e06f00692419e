import logging

from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.services.image_generation.factory import resolve_provider_config


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness check - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness check: database, Redis (lock + breaker state) and a configured provider."""
    checks: dict[str, str] = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
        redis.Redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
        checks["redis"] = "ok"
    except Exception as e:
        logger.warning("readiness_check_failed", extra={"error": str(e)})
        response.status_code = 503
        return {"status": "not_ready", "checks": checks, "error": str(e)}

    provider = resolve_provider_config(settings)
    checks["provider"] = provider["label"] if provider else "unconfigured"
    return {"status": "ready", "checks": checks}
