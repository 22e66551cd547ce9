"""CreditBalance model: cached projection of the credit ledger."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Per-account balance cache; always re-derivable from `credit_ledger`."""

    __tablename__ = "credit_balances"

    account_id = Column(String, ForeignKey("accounts.id"), primary_key=True)
    included_credits = Column(Integer, nullable=False, default=0)
    purchased_credits = Column(Integer, nullable=False, default=0)
    last_grant_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="credit_balance")
