from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from app.db.base import Base


class CreditLedger(Base):
    __tablename__ = "credit_ledger"
    __table_args__ = (UniqueConstraint("user_id", "task_id", "operation", name="uq_credit_ledger_operation"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    # Initial grants use the synthetic task id "grant:initial"
    task_id = Column(String, nullable=False, index=True)
    operation = Column(String, nullable=False)  # GRANT, DEBIT, REFUND
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
