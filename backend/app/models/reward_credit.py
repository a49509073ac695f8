from sqlalchemy import Column, Integer, Numeric, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from app.db.db import Base
from sqlalchemy.orm import relationship
from datetime import datetime, UTC


def _utc_now_naive() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)

class RewardCredit(Base):
    """One exactly-once reward for one collected item.

    ``batch_id`` is the settlement claim: NULL means the credit sits in the
    unsettled pool and may be claimed by the next dispatch cycle.
    """
    __tablename__ = "reward_credits"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user_account.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(String(64), nullable=False)
    item_type = Column(String(32), nullable=False)
    amount = Column(Numeric(18, 6), nullable=False)
    issued_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    batch_id = Column(Integer, ForeignKey("settlement_batches.id", ondelete="SET NULL"), nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'item_id', name='uq_reward_credit_user_item'),
        CheckConstraint('amount > 0', name='ck_reward_credit_amount_positive'),
    )

    user_account = relationship("UserAccount", back_populates="reward_credits")
    settlement_batch = relationship("SettlementBatch", back_populates="credits")
