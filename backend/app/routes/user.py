from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.dependencies.security import require_user_id_int
from app.dependencies.services import get_reward_ledger, get_user_service, get_wallet_ledger_service
from app.schemas.sync_schemas import UserStatsResponse
from app.services.reward_ledger import RewardLedger
from app.services.user_service import UserService
from app.services.wallet_ledger import WalletLedgerService

router = APIRouter(
    prefix="/api/v1/user",
    tags=["user"]
)


@router.get("/stats", response_model=UserStatsResponse)
def get_user_stats(
    user_id: int = Depends(require_user_id_int),
    users: UserService = Depends(get_user_service),
    ledger: RewardLedger = Depends(get_reward_ledger),
    wallet: WalletLedgerService = Depends(get_wallet_ledger_service),
) -> Dict[str, Any]:
    """
    Authoritative reward totals for the current user.

    - totalRewards: everything ever credited
    - settledRewards: the part confirmed on chain
    - pendingRewards: credited but not yet confirmed on chain
    """
    user = users.get_or_create_user(user_id)
    total = ledger.total_credited_for_user(user_id)
    settled = wallet.settlement_totals(user_id)["settled"]
    return {
        "totalRewards": float(total),
        "dataCollected": ledger.count_for_user(user_id),
        "settledRewards": float(settled),
        "pendingRewards": float(total - settled),
        "walletAddress": user.wallet_address,
    }
