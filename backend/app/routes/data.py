from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from app.config import Settings
from app.dependencies.security import require_user_id_int
from app.dependencies.services import get_reward_ledger, get_settings, get_user_service
from app.schemas.sync_schemas import SubmitDataRequest, SubmitDataResponse
from app.services.errors import ServiceError
from app.services.reward_ledger import RewardLedger
from app.services.user_service import UserService

router = APIRouter(
    prefix="/api/v1/data",
    tags=["data"]
)


@router.post("/submit", response_model=SubmitDataResponse)
def submit_data(
    payload: SubmitDataRequest,
    user_id: int = Depends(require_user_id_int),
    settings: Settings = Depends(get_settings),
    users: UserService = Depends(get_user_service),
    ledger: RewardLedger = Depends(get_reward_ledger),
) -> Dict[str, Any]:
    """
    Credit a batch of collected items.

    Request body:
    {
        "items": [
            {"id": "9f1c...", "type": "location", "content": "{...}", "timestamp": 1718000000000}
        ]
    }

    Returns:
    - syncedData: [{"id", "reward"}] for every item that is credited, including
      items credited by an earlier submission. An id missing from the list
      means "not credited yet, resend later"; it is not an error.
    """
    if len(payload.items) > settings.max_submit_items:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": f"At most {settings.max_submit_items} items may be submitted at once.",
                    "details": {"field": "items", "count": len(payload.items)}
                }
            }
        )

    try:
        users.get_or_create_user(user_id)
        result = ledger.credit_many(user_id, payload.items)
    except ServiceError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    return {
        "syncedData": [
            {"id": credit.item_id, "reward": float(credit.amount)}
            for credit in result.credits
        ]
    }
