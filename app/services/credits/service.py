import logging
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import CreditLedger
from app.utils.metrics import credit_operations_total

logger = logging.getLogger(__name__)

GRANT_TASK_ID = "grant:initial"


class CreditBalanceNotFound(LookupError):
    """No balance row exists for the user yet."""


class InsufficientCredits(Exception):
    def __init__(self, user_id: str, required: int, available: int | None = None):
        super().__init__(f"insufficient credits: required {required}, available {available}")
        self.user_id = user_id
        self.required = required
        self.available = available


class CreditService:
    """
    Per-user credit balance. Callers own the transaction: methods flush, the
    caller commits (or uses the commit helpers on TaskService).
    """

    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, user_id: str) -> int:
        credits = (
            self.db.query(CreditBalance.credits)
            .filter(CreditBalance.user_id == user_id)
            .scalar()
        )
        if credits is None:
            raise CreditBalanceNotFound(user_id)
        return credits

    def ensure_balance(self, user_id: str) -> int:
        """Return the balance, creating the row with the default grant on first use."""
        try:
            return self.get_balance(user_id)
        except CreditBalanceNotFound:
            pass
        try:
            self.db.add(CreditBalance(user_id=user_id, credits=settings.default_credits))
            self.db.add(
                CreditLedger(
                    user_id=user_id,
                    task_id=GRANT_TASK_ID,
                    operation="GRANT",
                    amount=settings.default_credits,
                )
            )
            self.db.commit()
            credit_operations_total.labels(operation="GRANT").inc()
            logger.info("credits_provisioned", extra={"user_id": user_id, "credits": settings.default_credits})
        except IntegrityError:
            # Concurrent first request created the row
            self.db.rollback()
        return self.get_balance(user_id)

    def debit(self, user_id: str, amount: int = 1, task_id: str | None = None) -> int:
        """
        Atomically take `amount` credits. The row is only touched when the
        balance covers the amount, so concurrent debits never go negative.
        """
        if task_id and self._ledger_exists(user_id, task_id, "DEBIT"):
            return self.get_balance(user_id)
        result = self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id, CreditBalance.credits >= amount)
            .values(credits=CreditBalance.credits - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            available = (
                self.db.query(CreditBalance.credits)
                .filter(CreditBalance.user_id == user_id)
                .scalar()
            )
            raise InsufficientCredits(user_id, amount, available)
        self.db.add(
            CreditLedger(
                user_id=user_id,
                task_id=task_id or f"manual:{uuid4()}",
                operation="DEBIT",
                amount=amount,
            )
        )
        self.db.flush()
        credit_operations_total.labels(operation="DEBIT").inc()
        return self.get_balance(user_id)

    def credit(self, user_id: str, amount: int = 1, task_id: str | None = None) -> int:
        """
        Add `amount` credits back. A second refund for the same task is
        skipped by the ledger; task-level exactly-once is TaskService.refund_once.
        """
        if task_id and self._ledger_exists(user_id, task_id, "REFUND"):
            return self.get_balance(user_id)
        result = self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(credits=CreditBalance.credits + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise CreditBalanceNotFound(user_id)
        self.db.add(
            CreditLedger(
                user_id=user_id,
                task_id=task_id or f"manual:{uuid4()}",
                operation="REFUND",
                amount=amount,
            )
        )
        self.db.flush()
        credit_operations_total.labels(operation="REFUND").inc()
        return self.get_balance(user_id)

    def list_ledger(self, user_id: str, limit: int = 20) -> list[CreditLedger]:
        return (
            self.db.query(CreditLedger)
            .filter(CreditLedger.user_id == user_id)
            .order_by(CreditLedger.created_at.desc())
            .limit(limit)
            .all()
        )

    def _ledger_exists(self, user_id: str, task_id: str, operation: str) -> bool:
        return (
            self.db.query(CreditLedger.id)
            .filter(
                CreditLedger.user_id == user_id,
                CreditLedger.task_id == task_id,
                CreditLedger.operation == operation,
            )
            .first()
            is not None
        )
