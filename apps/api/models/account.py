"""Account model: tenant billing record."""

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import false, func
import uuid

from database import Base


class Account(Base):
    """Tenant billing state mirrored from the payment platform."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    business_name = Column(String, nullable=True)
    plan = Column(String, nullable=False, default="no_plan", server_default="no_plan")
    billing_period = Column(String, nullable=False, default="none", server_default="none")
    external_customer_id = Column(String, nullable=True, index=True)
    external_subscription_id = Column(String, nullable=True, index=True)
    subscription_status = Column(String, nullable=True, index=True)
    is_free_account = Column(Boolean, nullable=False, default=False, server_default=false())
    has_had_paid_plan = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    credit_balance = relationship("CreditBalance", back_populates="account", uselist=False)
    credit_entries = relationship("CreditLedger", back_populates="account")
