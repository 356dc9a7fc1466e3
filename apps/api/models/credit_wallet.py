"""CreditWallet model: one balance bucket per owner and credit type."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditWallet(Base):
    """Materialized balance for (owner_type, owner_id, credit_type).

    ``balance`` caches the sum of the wallet's transactions and ``version`` is
    bumped on every write so concurrent writers can compare-and-swap.
    """

    __tablename__ = "credit_wallets"
    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", "credit_type", name="uq_credit_wallets_owner_type"),
        CheckConstraint("balance >= 0", name="ck_credit_wallets_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_type = Column(String, nullable=False)
    owner_id = Column(String, nullable=False, index=True)
    credit_type = Column(String, nullable=False)
    balance = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    transactions = relationship("CreditTransaction", back_populates="wallet")
