from .user_account import UserAccount
from .reward_credit import RewardCredit
from .settlement_batch import SettlementBatch, SettlementState, OPEN_STATES
from .wallet_transaction import (
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
    TERMINAL_STATUSES,
)

__all__ = [
    "UserAccount",
    "RewardCredit",
    "SettlementBatch",
    "SettlementState",
    "OPEN_STATES",
    "WalletTransaction",
    "WalletTransactionStatus",
    "WalletTransactionType",
    "TERMINAL_STATUSES",
]
