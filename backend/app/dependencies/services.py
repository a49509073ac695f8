from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.config import Settings, load_settings
from app.dependencies.db import get_db
from app.services.ledger_client import LedgerClient, build_ledger_client
from app.services.reward_ledger import RewardLedger
from app.services.settlement_dispatcher import SettlementDispatcher
from app.services.user_service import UserService
from app.services.wallet_ledger import WalletLedgerService


@lru_cache
def get_settings() -> Settings:
    return load_settings()


@lru_cache
def get_ledger_client() -> LedgerClient:
    # One client per process; the in-memory ledger must outlive a request
    return build_ledger_client(get_settings())

def get_user_service(db: Session = Depends(get_db)) -> UserService:
    return UserService(db)

def get_reward_ledger(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> RewardLedger:
    return RewardLedger(db, settings)

def get_settlement_dispatcher(
    db: Session = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
    settings: Settings = Depends(get_settings),
) -> SettlementDispatcher:
    return SettlementDispatcher(db, ledger, settings)

def get_wallet_ledger_service(
    db: Session = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
    settings: Settings = Depends(get_settings),
    dispatcher: SettlementDispatcher = Depends(get_settlement_dispatcher),
) -> WalletLedgerService:
    return WalletLedgerService(db, ledger, settings, dispatcher)
