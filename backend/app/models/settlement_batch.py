from sqlalchemy import Column, Integer, Numeric, String, DateTime, Enum as SAEnum, ForeignKey
from app.db.db import Base
from sqlalchemy.orm import relationship
from datetime import datetime, UTC
from enum import Enum as PyEnum


class SettlementState(str, PyEnum):
    Pending = "pending"
    Submitted = "submitted"
    Confirmed = "confirmed"
    Failed = "failed"


OPEN_STATES = (SettlementState.Pending, SettlementState.Submitted)


def _utc_now_naive() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)

class SettlementBatch(Base):
    __tablename__ = "settlement_batches"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user_account.id", ondelete="CASCADE"), nullable=False, index=True)
    total_amount = Column(Numeric(18, 6), nullable=False)
    state = Column(SAEnum(SettlementState), nullable=False, default=SettlementState.Pending)
    tx_ref = Column(String(128), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    claimed_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    user_account = relationship("UserAccount", back_populates="settlement_batches")
    credits = relationship("RewardCredit", back_populates="settlement_batch")

    @property
    def reference(self) -> str:
        """Idempotency reference handed to the ledger service for this batch."""
        return f"settlement-{self.id}"
