from sqlalchemy import Column, Integer, Numeric, String, DateTime, Enum as SAEnum, ForeignKey
from app.db.db import Base
from datetime import datetime, UTC
from enum import Enum as PyEnum


class WalletTransactionType(str, PyEnum):
    Reward = "REWARD"
    Transfer = "TRANSFER"

class WalletTransactionStatus(str, PyEnum):
    Pending = "PENDING"
    Completed = "COMPLETED"
    Failed = "FAILED"


TERMINAL_STATUSES = (WalletTransactionStatus.Completed, WalletTransactionStatus.Failed)


def _utc_now_naive() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)

class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    # Chain transaction id, or "settlement-<batch id>" when no transaction was ever accepted
    id = Column(String(128), primary_key=True)
    user_id = Column(Integer, ForeignKey("user_account.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("settlement_batches.id", ondelete="SET NULL"), nullable=True, index=True)
    amount = Column(Numeric(18, 6), nullable=False)
    timestamp = Column(DateTime, default=_utc_now_naive, nullable=False)
    type = Column(SAEnum(WalletTransactionType), nullable=False, default=WalletTransactionType.Reward)
    status = Column(SAEnum(WalletTransactionStatus), nullable=False, default=WalletTransactionStatus.Pending)
    from_address = Column(String, nullable=True)
    to_address = Column(String, nullable=True)
    description = Column(String, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: WalletTransactionStatus) -> bool:
        """Move to ``status`` unless already terminal. Returns True if the status changed."""
        if self.is_terminal or self.status == status:
            return False
        self.status = status
        return True

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'amount': float(self.amount),
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'type': self.type.value if self.type else None,
            'status': self.status.value if self.status else None,
            'fromAddress': self.from_address,
            'toAddress': self.to_address,
            'description': self.description,
        }
