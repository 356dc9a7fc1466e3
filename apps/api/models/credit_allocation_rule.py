"""CreditAllocationRule model for recurring organization grants."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditAllocationRule(Base):
    """Standing policy granting credits to organization members every period."""

    __tablename__ = "credit_allocation_rules"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_allocation_rules_amount_positive"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    credit_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    frequency = Column(String, nullable=False)
    target_role = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_period_start = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
