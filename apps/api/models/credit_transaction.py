"""CreditTransaction model for wallet balance changes."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable ledger entry. Positive delta credits, negative delta debits."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("wallet_id", "idempotency_key", name="uq_credit_transactions_wallet_key"),
        CheckConstraint("delta <> 0", name="ck_credit_transactions_delta_non_zero"),
        Index("ix_credit_transactions_wallet_created", "wallet_id", "created_at", "id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    wallet_id = Column(String, ForeignKey("credit_wallets.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    booking_id = Column(String, nullable=True, index=True)
    created_by = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    wallet = relationship("CreditWallet", back_populates="transactions")
