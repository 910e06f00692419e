from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.generation import HistoryEntryOut
from app.services.auth.jwt import get_current_user
from app.services.history.service import HistoryService


router = APIRouter(prefix="/api/history", tags=["history"])


@router.get("")
def list_history(
    limit: int | None = Query(default=None, ge=1),
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    service = HistoryService(db)
    entries = service.list_for_user(current_user["user_id"], limit=limit)
    return {
        "success": True,
        "history": [HistoryEntryOut.model_validate(e).model_dump(mode="json") for e in entries],
        "maxEntries": service.max_entries,
    }


@router.get("/count")
def count_history(
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    return {"success": True, "count": HistoryService(db).count(current_user["user_id"])}


@router.delete("/{entry_id}")
def delete_history_entry(
    entry_id: str,
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    if not HistoryService(db).delete(current_user["user_id"], entry_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="历史记录不存在")
    return {"success": True}
