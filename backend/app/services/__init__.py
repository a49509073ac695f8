from .errors import ServiceError, WalletNotConfigured
from .reward_ledger import RewardLedger
from .settlement_dispatcher import SettlementDispatcher
from .wallet_ledger import WalletLedgerService

__all__ = [
    "ServiceError",
    "WalletNotConfigured",
    "RewardLedger",
    "SettlementDispatcher",
    "WalletLedgerService",
]
