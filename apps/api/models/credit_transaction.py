"""CreditTransaction model, the audit trail of the credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable credit ledger entry.

    A reference id credits a user at most once: positive entries are unique
    per (user_id, reference_id).
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index(
            "uq_credit_transactions_user_reference_grant",
            "user_id",
            "reference_id",
            unique=True,
            postgresql_where=text("amount > 0 AND reference_id IS NOT NULL"),
            sqlite_where=text("amount > 0 AND reference_id IS NOT NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String, nullable=False)
    description = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    balance_after = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")
