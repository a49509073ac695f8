from sqlalchemy import Column, Integer, String, DateTime
from app.db.db import Base
from sqlalchemy.orm import relationship
from datetime import datetime, UTC


def _utc_now_naive() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)

class UserAccount(Base):
    __tablename__ = "user_account"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False, unique=True)
    # Settlement destination; bound on the first reward request
    wallet_address = Column(String, nullable=True, unique=True)
    created_date = Column(DateTime, default=_utc_now_naive, nullable=False)

    reward_credits = relationship("RewardCredit", back_populates="user_account", cascade="all, delete-orphan")
    settlement_batches = relationship("SettlementBatch", back_populates="user_account", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        """Convert UserAccount instance to dictionary."""
        return {
            'id': self.id,
            'username': self.username,
            'wallet_address': self.wallet_address,
            'created_date': self.created_date.isoformat() if self.created_date else None,
        }
