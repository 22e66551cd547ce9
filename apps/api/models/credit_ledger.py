"""CreditLedger model for prepaid credit accounting."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_account_created", "account_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    credit_type = Column(String, nullable=False)
    transaction_type = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    billing_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)

    account = relationship("Account", back_populates="credit_entries")
