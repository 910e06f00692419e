from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.schemas.generation import CreditLedgerOut
from app.services.auth.jwt import get_current_user
from app.services.credits.service import CreditService


router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("")
def get_credits(
    ledger_limit: int = Query(default=20, ge=0, le=100, alias="ledgerLimit"),
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    """Current balance (provisioned on first call) and the latest ledger entries."""
    service = CreditService(db)
    user_id = current_user["user_id"]
    balance = service.ensure_balance(user_id)
    ledger = service.list_ledger(user_id, limit=ledger_limit) if ledger_limit else []
    return {
        "success": True,
        "credits": balance,
        "costPerGeneration": settings.generation_cost_credits,
        "ledger": [CreditLedgerOut.model_validate(row).model_dump(mode="json") for row in ledger],
    }
