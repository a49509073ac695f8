from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies.security import require_user_id_int
from app.dependencies.services import (
    get_settlement_dispatcher,
    get_user_service,
    get_wallet_ledger_service,
)
from app.models.settlement_batch import SettlementBatch
from app.models.wallet_transaction import WalletTransaction
from app.schemas.sync_schemas import TokenRewardRequest, TokenRewardResponse
from app.services.errors import ServiceError
from app.services.settlement_dispatcher import SettlementDispatcher
from app.services.user_service import UserService
from app.services.wallet_ledger import WalletLedgerService

router = APIRouter(
    prefix="/api/v1/wallet",
    tags=["wallet"]
)


def _http_error(exc: ServiceError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "details": exc.details,
            }
        },
    )


@router.post("/reward", response_model=TokenRewardResponse)
def request_token_reward(
    payload: TokenRewardRequest,
    user_id: int = Depends(require_user_id_int),
    users: UserService = Depends(get_user_service),
    dispatcher: SettlementDispatcher = Depends(get_settlement_dispatcher),
) -> Dict[str, Any]:
    """
    Settle the user's unsettled rewards to ``walletAddress`` now.

    The transfer is submitted but not awaited: the returned transaction is
    pending until a later dispatch cycle or reconciliation confirms it.

    Request body:
    {
        "walletAddress": "7xKX...gAsU"
    }
    """
    try:
        users.bind_wallet(user_id, payload.wallet_address)
        report = dispatcher.run_cycle(user_id)
    except ServiceError as exc:
        raise _http_error(exc)

    if not report.submitted:
        if report.failed:
            message = "Settlement failed; your rewards remain credited and will be retried."
        elif report.retrying:
            message = "Settlement could not be submitted yet; it will be retried."
        else:
            message = "No unsettled rewards to transfer."
        return {"success": False, "message": message, "transactionInfo": None}

    batch = dispatcher.db.get(SettlementBatch, report.submitted[-1])
    record = dispatcher.db.get(WalletTransaction, batch.tx_ref)
    return {
        "success": True,
        "transactionInfo": {
            "txId": record.id,
            "amount": float(record.amount),
            "fromAddress": record.from_address,
            "timestamp": record.timestamp.isoformat(),
        },
    }


@router.get("/transactions")
def get_transaction_history(
    user_id: int = Depends(require_user_id_int),
    wallet: WalletLedgerService = Depends(get_wallet_ledger_service),
) -> Dict[str, Any]:
    """Transaction history of the current user, newest first. Read only."""
    return {"transactions": wallet.get_transaction_history(user_id)}


@router.post("/reconcile")
def reconcile_wallet(
    user_id: int = Depends(require_user_id_int),
    wallet: WalletLedgerService = Depends(get_wallet_ledger_service),
) -> Dict[str, Any]:
    """
    Re-derive settlement state from the external ledger.

    Pending transactions older than the configured timeout are re-queried and
    finalized; claims abandoned by a crashed dispatch are released.
    """
    try:
        summary = wallet.reconcile(user_id)
    except ServiceError as exc:
        raise _http_error(exc)
    return summary.model_dump(mode="json", by_alias=True)


@router.get("/{wallet_address}")
def get_wallet(
    wallet_address: str,
    user_id: int = Depends(require_user_id_int),
    wallet: WalletLedgerService = Depends(get_wallet_ledger_service),
) -> Dict[str, Any]:
    """
    Balance and transactions of a bound wallet.

    Security:
    - Only the user the wallet is bound to may read it
    """
    try:
        return wallet.get_wallet(wallet_address, user_id=user_id)
    except ServiceError as exc:
        raise _http_error(exc)
